from __future__ import annotations

from loguru import logger

from sitechat.models import Message


def merge_message(canonical: list[Message], fragment: Message, *, log=logger) -> list[Message]:
    """Fold one streamed fragment into the canonical message list.

    A fragment whose id matches the tail extends it. A fragment whose id
    matches any earlier message is a protocol violation: it is logged and the
    list is returned unchanged. Anything else is appended.
    """
    if canonical and canonical[-1].id == fragment.id:
        return canonical[:-1] + [_merge_into(canonical[-1], fragment)]

    if any(m.id == fragment.id for m in canonical):
        log.error(
            f"Out-of-order fragment for message {fragment.id!r}: id is not the tail "
            f"of the message list ({len(canonical)} messages); fragment ignored"
        )
        return canonical

    return canonical + [fragment]


def _merge_into(existing: Message, fragment: Message) -> Message:
    attachments = list(existing.attachments)
    for attachment in fragment.attachments:
        if attachment not in attachments:
            attachments.append(attachment)
    return Message(
        id=existing.id,
        role=existing.role,
        content=existing.content + fragment.content,
        annotations=existing.annotations | fragment.annotations,
        created_at=existing.created_at,
        attachments=attachments,
        has_interacted=existing.has_interacted,
    )
