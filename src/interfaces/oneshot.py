"""One-shot interface: run a single search, print the response as JSON, exit."""

from __future__ import annotations

import asyncio

from src.contracts.rag_search_v1 import Identity
from src.core.config import config
from src.orchestrators.rag.errors import PipelineError
from src.orchestrators.rag.pipeline import create_pipeline


async def run_oneshot(
    query: str,
    user_id: str | None = None,
    team_id: str | None = None,
    limit: int | None = None,
) -> int:
    text = (query or "").strip()
    if not text:
        print("Error: query must not be empty")
        return 2

    user = (user_id or config.default_user_id or "").strip()
    if not user:
        print("Error: a user id is required (--user or RAG_USER_ID)")
        return 2

    request: dict = {"query": text}
    if limit is not None:
        request["limit"] = limit
    identity = Identity(user_id=user, team_id=team_id, currency=config.default_currency)

    pipeline = create_pipeline()
    try:
        response = await pipeline.execute_search(request, identity)
    except PipelineError as e:
        print(f"Error: {e.user_message}")
        return 2
    finally:
        await pipeline.close()

    print(response.model_dump_json(indent=2, exclude_none=True))
    return 0 if response.success else 1


def main(
    query: str,
    user_id: str | None = None,
    team_id: str | None = None,
    limit: int | None = None,
) -> int:
    return asyncio.run(run_oneshot(query=query, user_id=user_id, team_id=team_id, limit=limit))
