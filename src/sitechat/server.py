from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from sitechat.bootstrap import AppRuntime
from sitechat.models import ChatRequest, Message
from sitechat.orchestrator import Exchange
from sitechat.stream_events import ERROR, StreamEvent

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class MessageIn(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = None
    role: Literal["user", "assistant", "system"]
    content: str | list[Any] = ""
    annotations: list[str] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    has_interacted: bool = Field(False, alias="hasInteracted")

    def to_message(self) -> Message:
        return Message.from_dict(self.model_dump(by_alias=True, exclude_none=True))


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[MessageIn] = Field(min_length=1)
    model: str | None = None
    provider: str | None = None
    context_optimization: bool = Field(False, alias="contextOptimization")
    chat_mode: Literal["discuss", "build"] = Field("build", alias="chatMode")
    enabled_tools: list[str] = Field(default_factory=list, alias="enabledTools")
    tool_choice: Literal["auto", "none"] = Field("auto", alias="toolChoice")
    chat_id: str | None = Field(None, alias="chatId")
    user_id: str | None = Field(None, alias="userId")
    files: dict[str, str] = Field(default_factory=dict)
    recently_edited: list[str] = Field(default_factory=list, alias="recentlyEdited")

    def to_request(self) -> ChatRequest:
        return ChatRequest(
            messages=[m.to_message() for m in self.messages],
            model=self.model,
            provider=self.provider,
            context_optimization=self.context_optimization,
            chat_mode=self.chat_mode,
            enabled_tools=set(self.enabled_tools),
            tool_choice=self.tool_choice,
            chat_id=self.chat_id,
            user_id=self.user_id,
            files=dict(self.files),
            recently_edited=list(self.recently_edited),
        )


def create_app(runtime: AppRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        runtime.close()

    app = FastAPI(title="sitechat", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning(f"Rejected {request.url.path}: {len(exc.errors())} validation error(s)")
        return JSONResponse(
            status_code=400,
            content={
                "error": True,
                "message": "Invalid request",
                "statusCode": 400,
                "isRetryable": False,
                "details": exc.errors(),
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "providers": sorted(runtime.providers)}

    @app.post("/api/chat")
    async def chat(body: ChatBody):
        exchange = runtime.orchestrator.start(body.to_request())
        events = exchange.events().__aiter__()
        try:
            first = await events.__anext__()
        except StopAsyncIteration:
            first = None

        # Nothing has been sent yet, so a leading error can use a real status.
        if first is not None and first.kind == ERROR:
            await exchange.wait()
            return JSONResponse(status_code=first.data.get("statusCode", 500), content=first.data)

        return StreamingResponse(
            _sse(exchange, first, events),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.get("/api/injections/{session_id}")
    async def take_injection(session_id: str) -> dict[str, Any]:
        payload = await runtime.injection_store.take_once(session_id)
        if payload is None:
            raise HTTPException(status_code=404, detail=f"No pending injection for session {session_id}")
        return {"sessionId": session_id, "payload": payload}

    return app


async def _sse(
    exchange: Exchange,
    first: StreamEvent | None,
    rest: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    try:
        if first is not None:
            yield first.to_sse()
        async for event in rest:
            yield event.to_sse()
    finally:
        # Client disconnects surface here as cancellation of the generator.
        exchange.abort()
