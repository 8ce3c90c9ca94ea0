from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sitechat.models import Message

DEFAULT_TOKEN_CEILING = 190_000
DEFAULT_WARNING_THRESHOLD = 150_000
DEFAULT_PRESERVED_TAIL = 3


@runtime_checkable
class TokenEstimator(Protocol):
    def __call__(self, text: str) -> int: ...


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text.encode("utf-8")) / 4)


def estimate_message_tokens(messages: list[Message], estimator: TokenEstimator = estimate_text_tokens) -> int:
    return sum(estimator(m.content) for m in messages)


def estimate_block_tokens(block: dict, estimator: TokenEstimator = estimate_text_tokens) -> int:
    """Estimate one provider content block: its JSON skeleton plus its text payload."""
    kind = block.get("type")
    if kind == "text":
        payload = str(block.get("text", ""))
        skeleton = {**block, "text": ""}
    elif kind == "tool_result" and isinstance(block.get("content"), str):
        payload = block["content"]
        skeleton = {**block, "content": ""}
    else:
        return estimator(json.dumps(block, ensure_ascii=False, default=str))
    return estimator(json.dumps(skeleton, ensure_ascii=False, default=str)) + estimator(payload)


def estimate_provider_tokens(messages: list[dict], estimator: TokenEstimator = estimate_text_tokens) -> int:
    """Estimate provider-format messages, whose content is a string or a list of blocks."""
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += estimator(content)
        elif isinstance(content, list):
            total += sum(estimate_block_tokens(block, estimator) for block in content)
    return total


def omission_notice(count: int) -> str:
    noun = "message" if count == 1 else "messages"
    return f"{count} earlier {noun} omitted to fit context window"


@dataclass(frozen=True)
class BudgetResult:
    messages: list[Message]
    truncated: bool
    emergency: bool
    tokens_before: int
    tokens_after: int
    omitted_count: int = 0
    over_warning: bool = False


class TokenBudgetGuard:
    """Fits a message history under a token ceiling before it is submitted.

    The newest ``preserved_tail`` messages are always kept verbatim. Older
    history is included oldest-first until it would overflow; the rest is
    replaced by a single system notice. When the preserved tail alone is over
    the ceiling only the newest message survives (emergency truncation).
    """

    def __init__(
        self,
        ceiling: int = DEFAULT_TOKEN_CEILING,
        warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
        *,
        preserved_tail: int = DEFAULT_PRESERVED_TAIL,
        estimator: TokenEstimator = estimate_text_tokens,
    ):
        if ceiling <= 0:
            raise ValueError("ceiling must be positive")
        self._ceiling = ceiling
        self._warning_threshold = warning_threshold
        self._preserved_tail = max(1, preserved_tail)
        self._estimator = estimator

    @property
    def ceiling(self) -> int:
        return self._ceiling

    def apply(self, messages: list[Message]) -> BudgetResult:
        costs = [self._estimator(m.content) for m in messages]
        before = sum(costs)
        over_warning = before >= self._warning_threshold

        if before <= self._ceiling:
            return BudgetResult(messages, False, False, before, before, over_warning=over_warning)

        split = max(0, len(messages) - self._preserved_tail)
        head, tail = messages[:split], messages[split:]
        tail_tokens = sum(costs[split:])

        notice_reserve = self._estimator(omission_notice(len(head)))
        remaining = self._ceiling - tail_tokens - notice_reserve
        if remaining < 0:
            return self._emergency(messages, before, over_warning)

        kept: list[Message] = []
        running = 0
        for message, cost in zip(head, costs[:split]):
            if running + cost > remaining:
                break
            kept.append(message)
            running += cost

        omitted = len(head) - len(kept)
        result = list(kept)
        if omitted:
            result.append(Message.create("system", omission_notice(omitted), annotations={"hidden", "no-store"}))
        result.extend(tail)

        after = running + tail_tokens + (self._estimator(result[len(kept)].content) if omitted else 0)
        return BudgetResult(result, True, False, before, after, omitted, over_warning)

    def _emergency(self, messages: list[Message], before: int, over_warning: bool) -> BudgetResult:
        last = messages[-1]
        cost = self._estimator(last.content)
        if cost > self._ceiling:
            last = Message(
                id=last.id,
                role=last.role,
                content=_clip_utf8(last.content, self._ceiling * 4),
                annotations=set(last.annotations),
                created_at=last.created_at,
                attachments=list(last.attachments),
                has_interacted=last.has_interacted,
            )
            cost = self._estimator(last.content)
        return BudgetResult([last], True, True, before, cost, len(messages) - 1, over_warning)


def _clip_utf8(text: str, max_bytes: int) -> str:
    # Keep the end of the text; the newest instructions usually sit there.
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[-max_bytes:].decode("utf-8", errors="ignore")
