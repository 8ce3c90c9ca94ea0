from __future__ import annotations

from typing import Any

from loguru import logger

from sitechat.models import Message, Usage

_MAX_INPUT_CHARS = 100_000

_SUMMARIZE_PROMPT = """\
Summarize the following conversation between a user and an assistant that builds
websites. Preserve these details precisely:
- What the user wants the website to be and any explicit requirements
- Decisions already made (template, colours, pages, copy) and why
- Business facts, URLs and file paths that later turns may need
- What has been built so far and what is still pending

Do NOT reproduce file contents or code, just note which files exist or changed.

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""


def format_for_summary(messages: list[Message]) -> str:
    parts = []
    for msg in messages:
        if "hidden" in msg.annotations:
            continue
        parts.append(f"[{msg.role}]: {_preview_text(msg.content)}")
    return "\n\n".join(parts)


def _preview_text(text: str) -> str:
    if len(text) <= 2_000:
        return text
    return text[:1_500] + "\n[...truncated...]\n" + text[-500:]


async def create_chat_summary(
    provider: Any,
    model: str,
    messages: list[Message],
    *,
    max_tokens: int = 2048,
) -> tuple[str, Usage]:
    """Summarize the conversation so far with one auxiliary model call."""
    formatted = format_for_summary(messages)

    # Cap summarization input
    if len(formatted) > _MAX_INPUT_CHARS:
        half = _MAX_INPUT_CHARS // 2
        formatted = (
            formatted[:half]
            + "\n\n[...middle of conversation omitted for brevity...]\n\n"
            + formatted[-half:]
        )

    logger.debug(f"Summary request: model={model}, input_chars={len(formatted):,}")
    summary, usage = await provider.create_message(
        model,
        max_tokens,
        0,
        [{"role": "user", "content": _SUMMARIZE_PROMPT + formatted}],
    )
    logger.info(
        f"Chat summary: {len(messages)} messages into ~{len(summary) // 4:,} tokens "
        f"({usage.total_tokens:,} tokens used)"
    )
    return summary, usage
