"""Load and render pipeline prompts from prompts/rag/."""

import re
from pathlib import Path

from src.core.config import config

_PROMPT_CACHE: dict[str, str] = {}
_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


def _prompts_dir() -> Path:
    return config.prompts_dir


def load_rag_prompt(name: str) -> str:
    if name in _PROMPT_CACHE:
        return _PROMPT_CACHE[name]
    path = _prompts_dir() / "rag" / f"{name}.md"
    if not path.exists():
        raise FileNotFoundError(f"RAG prompt not found: {path}")
    text = path.read_text().rstrip()
    _PROMPT_CACHE[name] = text
    return text


def render_prompt(template: str, **values: object) -> str:
    """Substitute {placeholders} in one pass.

    Unknown names and braces in JSON examples are left alone, and substituted
    text is never scanned again, so a query containing "{hints}" stays literal.
    """

    def substitute(m: re.Match) -> str:
        key = m.group(1)
        return str(values[key]) if key in values else m.group(0)

    return _PLACEHOLDER.sub(substitute, template)
