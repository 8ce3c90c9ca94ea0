from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

ROLES = ("user", "assistant", "system")

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_ERROR = "error"
FINISH_TOOL_CALLS = "tool-calls"

FINISH_REASONS = (FINISH_STOP, FINISH_LENGTH, FINISH_ERROR, FINISH_TOOL_CALLS)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


@dataclass
class Message:
    id: str
    role: str
    content: str
    annotations: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utc_now)
    attachments: list[dict] = field(default_factory=list)
    has_interacted: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    @classmethod
    def create(cls, role: str, content: str, *, annotations: set[str] | None = None) -> Message:
        return cls(id=new_id(), role=role, content=content, annotations=set(annotations or ()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "annotations": sorted(self.annotations),
            "createdAt": self.created_at.isoformat(timespec="seconds"),
            "attachments": list(self.attachments),
            "hasInteracted": self.has_interacted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        created = data.get("createdAt") or data.get("created_at")
        if isinstance(created, str):
            created_at = datetime.fromisoformat(created)
        elif isinstance(created, datetime):
            created_at = created
        else:
            created_at = utc_now()
        return cls(
            id=str(data.get("id") or new_id()),
            role=str(data.get("role", "user")),
            content=_content_text(data.get("content", "")),
            annotations=set(data.get("annotations") or ()),
            created_at=created_at,
            attachments=list(data.get("attachments") or ()),
            has_interacted=bool(data.get("hasInteracted", data.get("has_interacted", False))),
        )

    def to_provider_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "\n".join(parts)
    return str(content)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int | None, completion_tokens: int | None) -> Usage:
        prompt = max(0, int(prompt_tokens or 0))
        completion = max(0, int(completion_tokens or 0))
        return cls(prompt, completion, prompt + completion)

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


class CumulativeUsage:
    """Running token totals for one exchange. Counters only ever grow."""

    def __init__(self) -> None:
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0

    def add(self, usage: Usage) -> None:
        self._prompt_tokens += max(0, usage.prompt_tokens)
        self._completion_tokens += max(0, usage.completion_tokens)
        self._total_tokens += max(0, usage.total_tokens)

    @property
    def prompt_tokens(self) -> int:
        return self._prompt_tokens

    @property
    def completion_tokens(self) -> int:
        return self._completion_tokens

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    def snapshot(self) -> Usage:
        return Usage(self._prompt_tokens, self._completion_tokens, self._total_tokens)

    def to_dict(self) -> dict[str, int]:
        return self.snapshot().to_dict()


@dataclass(frozen=True)
class StreamSegment:
    text: str
    finish_reason: str
    usage: Usage = field(default_factory=Usage)
    # Provider-format tool steps the segment completed, and the text after the last of them.
    exchange: tuple[dict, ...] = ()
    tail_text: str | None = None


@dataclass
class ToolInvocation:
    tool_name: str
    tool_call_id: str
    args: dict[str, Any]
    result: Any = None
    is_error: bool = False


@dataclass
class RecoveryState:
    last_activity_timestamp: float
    retry_count: int = 0
    max_retries: int = 2
    timeout_ms: int = 45_000
    base_retry_delay_ms: int = 1_000
    max_retry_delay_ms: int = 30_000


@dataclass(frozen=True)
class ProviderEvent:
    """One event of a provider stream: text-delta, tool-call, tool-result, finish or error."""

    type: str
    text: str = ""
    invocation: ToolInvocation | None = None
    finish_reason: str | None = None
    usage: Usage | None = None
    error: BaseException | None = None

    @classmethod
    def text_delta(cls, text: str) -> ProviderEvent:
        return cls(type="text-delta", text=text)

    @classmethod
    def tool_call(cls, invocation: ToolInvocation) -> ProviderEvent:
        return cls(type="tool-call", invocation=invocation)

    @classmethod
    def tool_result(cls, invocation: ToolInvocation) -> ProviderEvent:
        return cls(type="tool-result", invocation=invocation)

    @classmethod
    def finish(cls, finish_reason: str, usage: Usage) -> ProviderEvent:
        return cls(type="finish", finish_reason=finish_reason, usage=usage)

    @classmethod
    def failure(cls, error: BaseException) -> ProviderEvent:
        return cls(type="error", error=error, finish_reason=FINISH_ERROR)


@dataclass
class ChatRequest:
    messages: list[Message]
    model: str | None = None
    provider: str | None = None
    context_optimization: bool = False
    chat_mode: str = "build"
    enabled_tools: set[str] = field(default_factory=set)
    tool_choice: str = "auto"
    chat_id: str | None = None
    user_id: str | None = None
    files: dict[str, str] = field(default_factory=dict)
    recently_edited: list[str] = field(default_factory=list)
