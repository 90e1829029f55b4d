"""Context assembly for a single turn."""

from __future__ import annotations

import re
from dataclasses import dataclass

from nexus.compression.client import CompressionClient, CompressionPolicy, CompressionResult
from nexus.config.schema import DEFAULT_SYSTEM_INSTRUCTIONS
from nexus.logging import get_logger
from nexus.memory.longterm import LongTermMemoryStore, NullMemoryStore

logger = get_logger(__name__)

SECTION_SYSTEM = "[System Instructions]"
SECTION_PINNED = "[Pinned Context]"
SECTION_MEMORY = "[Long-Term Memory]"
SECTION_USER = "[User Message]"

_MIN_KEYWORD_LEN = 3
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def _strip_block(text: str, tag: str) -> str:
    start_tag, end_tag = f"<{tag}>", f"</{tag}>"
    start, end = text.find(start_tag), text.find(end_tag)
    if start == -1 or end == -1 or end <= start:
        return text
    return text[:start] + text[end + len(end_tag):]


def _extract_block(text: str, tag: str) -> str:
    start_tag, end_tag = f"<{tag}>", f"</{tag}>"
    start, end = text.find(start_tag), text.find(end_tag)
    if start == -1 or end == -1 or end <= start:
        return ""
    return text[start + len(start_tag):end].strip()


def _keywords(text: str) -> list[str]:
    seen: dict[str, None] = {}
    for token in _NON_ALNUM.sub(" ", text.lower()).split():
        if len(token) >= _MIN_KEYWORD_LEN:
            seen.setdefault(token, None)
    return list(seen)


def _bullets(block: str) -> list[str]:
    return [line.strip() for line in block.splitlines() if line.strip().startswith("- ")]


def _has_block(text: str, tag: str) -> bool:
    return f"<{tag}>" in text and f"</{tag}>" in text


def filter_memory_context(context: str, user_text: str) -> str:
    """Narrow tagged memory context to what *user_text* is about.

    The user summary block is always dropped. Context carrying ``<FACTS>`` or
    ``<EPISODES>`` blocks is reduced to the bullets sharing a keyword with
    *user_text*; any other context is passed through as returned.
    """
    sanitized = _strip_block(context, "USER_SUMMARY").strip()
    if not sanitized:
        return ""
    if not (_has_block(sanitized, "FACTS") or _has_block(sanitized, "EPISODES")):
        return sanitized

    keywords = _keywords(user_text)
    if not keywords:
        return ""
    sections: list[str] = []
    for tag, header in (
        ("FACTS", "# These are the most relevant facts"),
        ("EPISODES", "# These are the most relevant episodes"),
    ):
        relevant = [
            line for line in _bullets(_extract_block(sanitized, tag))
            if any(k in line.lower() for k in keywords)
        ]
        if relevant:
            sections.append(header + "\n" + "\n".join(relevant))
    return "\n\n".join(sections).strip()


def format_pinned(pinned_summaries: list[str]) -> str:
    return "\n".join(f"- {summary}" for summary in pinned_summaries)


def build_injected_context(
    *,
    system: str,
    pinned_context: str,
    memory_context: str,
    user_text: str,
) -> str:
    """Join the labeled sections into the exact prompt sent to the model."""
    sections = [
        f"{SECTION_SYSTEM}\n\n{system}",
        f"{SECTION_PINNED}\n\n{pinned_context}",
    ]
    if memory_context:
        sections.append(f"{SECTION_MEMORY}\n\n{memory_context}")
    sections.append(f"{SECTION_USER}\n\n{user_text}")
    return "\n\n".join(sections)


@dataclass
class AssembledContext:
    """The injected text plus what it took to build it."""

    text: str
    pinned_context: str
    memory_context: str = ""
    compression: CompressionResult | None = None
    compression_policy: CompressionPolicy | None = None

    @property
    def compressed(self) -> bool:
        return self.compression is not None


class ContextAssembler:
    """
    Builds the prompt for one turn.

    Pinned summaries are compressed when a compression client is enabled;
    long-term memory is fetched and filtered against the user's message.
    Both collaborators are optional and any failure degrades silently to
    the uncompressed pinned text and an empty memory section.
    """

    def __init__(
        self,
        *,
        compressor: CompressionClient | None = None,
        memory_store: LongTermMemoryStore | None = None,
        system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS,
    ) -> None:
        self.compressor = compressor
        self.memory_store = memory_store or NullMemoryStore()
        self.system_instructions = system_instructions

    async def _load_memory(self, session_id: str, user_id: str, user_text: str) -> str:
        try:
            raw = await self.memory_store.get_context(session_id, user_id)
        except Exception as e:
            logger.warning("memory_context_failed", error_type=type(e).__name__, error=str(e))
            return ""
        return filter_memory_context(raw or "", user_text)

    async def _compress(self, pinned_text: str) -> CompressionResult | None:
        if self.compressor is None or not self.compressor.enabled or not pinned_text.strip():
            return None
        try:
            return await self.compressor.compress(pinned_text)
        except Exception as e:
            logger.warning("compression_failed", reason="exception", error_type=type(e).__name__, error=str(e))
            return None

    async def assemble(
        self,
        *,
        session_id: str,
        user_id: str,
        pinned_summaries: list[str],
        user_text: str,
    ) -> AssembledContext:
        memory_context = await self._load_memory(session_id, user_id, user_text)

        pinned_text = format_pinned(pinned_summaries)
        compression = await self._compress(pinned_text)
        pinned_context = compression.output if compression is not None else pinned_text

        text = build_injected_context(
            system=self.system_instructions,
            pinned_context=pinned_context,
            memory_context=memory_context,
            user_text=user_text,
        )
        return AssembledContext(
            text=text,
            pinned_context=pinned_context,
            memory_context=memory_context,
            compression=compression,
            compression_policy=self.compressor.policy if compression is not None and self.compressor else None,
        )
