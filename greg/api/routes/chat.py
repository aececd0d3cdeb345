from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from greg.agents.orchestrator import ChatOrchestrator
from greg.models.schemas import ChatRequest
from greg.services import logger as log_service
from greg.services.conversation_log import ConversationLog
from greg.services.streaming import STATUS_MODE_HEADER, StreamWriter, detailed_status_requested

router = APIRouter(prefix="/api/chat", tags=["chat"])

UI_LANGUAGE_HEADER = "x-ui-language"
CONVERSATION_ID_HEADER = "x-conversation-id"


def _error(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def _validation_message(exc: ValidationError) -> str:
    fields = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
    if "model" in fields:
        return "Missing model"
    if "messages" in fields:
        return "Invalid messages"
    return "Invalid request"


def get_orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator()


@router.post("")
async def chat(request: Request):
    """Stream one assistant answer as OpenAI-style SSE deltas."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error("Invalid JSON")
    if not isinstance(payload, dict):
        return _error("Invalid JSON")
    try:
        body = ChatRequest.model_validate(payload)
    except ValidationError as exc:
        return _error(_validation_message(exc))

    writer = StreamWriter(send_detailed_status=detailed_status_requested(request.headers.get(STATUS_MODE_HEADER)))
    conversation_log = ConversationLog(request.headers.get(CONVERSATION_ID_HEADER))
    ui_language = request.headers.get(UI_LANGUAGE_HEADER)
    log_service.log_event(
        event_type="chat_started",
        message="Chat stream started",
        model=body.model,
        messages=len(body.messages),
        conversation_id=conversation_log.conversation_id,
    )

    orchestrator = get_orchestrator()
    task = asyncio.create_task(orchestrator.run(body, writer, ui_language=ui_language, log=conversation_log))

    async def event_generator():
        try:
            async for frame in writer:
                yield {"data": frame.data()}
        finally:
            # client gone: stop upstream work too
            if not task.done():
                task.cancel()
                log_service.log_event(
                    event_type="chat_aborted",
                    message="Client disconnected before the answer finished",
                    conversation_id=conversation_log.conversation_id,
                )

    return EventSourceResponse(event_generator(), sep="\n")
