"""Entry point: oneshot."""

import argparse
import sys


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m src.main")
    sub = parser.add_subparsers(dest="mode")

    oneshot = sub.add_parser("oneshot", help="run one search and print the JSON response")
    oneshot.add_argument("query", nargs="*", help="query text; read from stdin when omitted")
    oneshot.add_argument("--user", dest="user_id", help="user id (default: RAG_USER_ID)")
    oneshot.add_argument("--team", dest="team_id", help="team scope for claims")
    oneshot.add_argument("--limit", type=int, help="maximum number of results")
    return parser


def main():
    args = _parser().parse_args()

    if args.mode == "oneshot":
        from src.interfaces.oneshot import main as run_oneshot_main

        if args.query:
            query = " ".join(args.query).strip()
        else:
            query = sys.stdin.read().strip()
        sys.exit(
            run_oneshot_main(
                query=query, user_id=args.user_id, team_id=args.team_id, limit=args.limit
            )
        )

    else:
        print("Usage: python -m src.main oneshot [--user ID] [--team ID] [--limit N] QUERY")
        sys.exit(1)


if __name__ == "__main__":
    main()
