"""Turn summarization with a deterministic fallback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import json_repair

from nexus.logging import get_logger
from nexus.providers.base import CompletionRequest, ProviderAdapter

logger = get_logger(__name__)

SUMMARY_SYSTEM = "You summarize chat turns. Return strict JSON with keys title and summary_2sent."
FALLBACK_PREFIX_CHARS = 240


def summary_prompt(user_text: str, assistant_text: str) -> str:
    return (
        'Return JSON {"title":"...","summary_2sent":"..."} derived only from the following '
        "user+assistant exchange.\n\n"
        f"User:\n{user_text}\n\nAssistant:\n{assistant_text}"
    )


@dataclass(frozen=True)
class TurnSummary:
    title: str | None
    summary: str


def extract_json_object(raw: str) -> str | None:
    """Return the first balanced ``{...}`` substring of *raw*, or None.

    Braces inside JSON string literals are not counted.
    """
    start = raw.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(raw)):
            ch = raw[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return raw[start:i + 1]
        # Unbalanced from this opening brace; try the next one
        start = raw.find("{", start + 1)
    return None


def fallback_summary(user_text: str, assistant_text: str) -> TurnSummary:
    summary = f"{user_text[:FALLBACK_PREFIX_CHARS]} / {assistant_text[:FALLBACK_PREFIX_CHARS]}"
    return TurnSummary(title=None, summary=summary)


def parse_summary(raw: str) -> TurnSummary | None:
    candidate = extract_json_object(raw or "")
    if candidate is None:
        return None
    parsed: Any = json_repair.loads(candidate)
    if not isinstance(parsed, dict):
        return None
    summary = parsed.get("summary_2sent")
    if not isinstance(summary, str) or not summary.strip():
        return None
    title = parsed.get("title")
    title = title.strip() if isinstance(title, str) else ""
    return TurnSummary(title=title or None, summary=summary.strip())


class TurnSummarizer:
    """Asks the turn's own adapter for a title and a two-sentence summary.

    :meth:`summarize` never raises and never returns an empty summary.
    """

    async def summarize(
        self,
        adapter: ProviderAdapter,
        *,
        model: str,
        user_text: str,
        assistant_text: str,
    ) -> TurnSummary:
        try:
            result = await adapter.complete(
                CompletionRequest(
                    model=model,
                    system=SUMMARY_SYSTEM,
                    prompt=summary_prompt(user_text, assistant_text),
                )
            )
            parsed = parse_summary(result.text)
        except Exception as e:
            logger.warning("summarize_failed", error_type=type(e).__name__, error=str(e))
            parsed = None

        if parsed is not None:
            return parsed

        logger.info("summarize_fallback", provider=adapter.name.value)
        return fallback_summary(user_text, assistant_text)
