"""REST API for colloquy.

Endpoints:
  POST   /chat                              - Send message, wait for the cycle result
  POST   /chat/stream                       - Send message, SSE stream of cycle events
  POST   /chat/complete                     - Send message, single non-streaming completion
  POST   /title                             - Suggest a conversation title
  GET    /conversations                     - Stored conversation ids
  GET    /conversations/{id}/history        - Durable history
  GET    /conversations/{id}/notices        - UI-visible system notices
  POST   /conversations/{id}/organize       - Replace history with a summary
  POST   /conversations/{id}/optimize       - Summarize old turns, shrink the rest
  POST   /conversations/{id}/edit           - Rewind to a turn and resend
  DELETE /conversations/{id}/turns/{index}  - Delete a turn and everything after it
  PUT    /conversations/{id}/turns/{index}  - Replace an assistant turn's text
  DELETE /conversations/{id}                - Delete history and notices
  GET    /health                            - Health check (store reachable)
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from colloquy.api.compaction import ConversationCompactor
from colloquy.api.notices import NoticeLog
from colloquy.api.runner import ChatEvent, ConversationRunner, CycleResult
from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.models import Turn
from colloquy.conversation.store import HistoryStore
from colloquy.errors import CompactionError, EditError, StoreError, SubmissionRejected

logger = logging.getLogger(__name__)


def _turns_json(turns: list[Turn]) -> list[dict[str, Any]]:
    return [t.model_dump(mode="json") for t in turns]


def _result_json(conversation_id: str, result: CycleResult) -> dict[str, Any]:
    return {
        "conversation_id": conversation_id,
        "status": result.status,
        "text": result.text,
        "rounds": result.rounds,
        "failure": result.failure,
        "message": result.message,
        "appended": len(result.appended),
    }


def _rejected(e: SubmissionRejected) -> JSONResponse:
    return JSONResponse({"error": str(e), "reason": e.reason}, status_code=409)


def _store_unavailable(e: StoreError) -> JSONResponse:
    return JSONResponse({"error": str(e)}, status_code=503)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    runner: ConversationRunner,
    compactor: ConversationCompactor,
    store: HistoryStore,
    notices: NoticeLog,
    guard: DeduplicationGuard,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get the cycle result."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        conversation_id = body.get("conversation_id") or str(uuid4())

        try:
            result = await runner.run_turn(conversation_id, message)
        except SubmissionRejected as e:
            return _rejected(e)
        return JSONResponse(_result_json(conversation_id, result))

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        conversation_id = body.get("conversation_id") or str(uuid4())

        try:
            guard.check(conversation_id, message)
        except SubmissionRejected as e:
            return _rejected(e)

        async def event_generator():
            try:
                async for event in runner.stream_turn(conversation_id, message):
                    yield f"data: {json.dumps(_event_json(conversation_id, event))}\n\n"
            except SubmissionRejected as e:
                yield f"data: {json.dumps({'type': 'error', 'text': str(e), 'reason': e.reason})}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def chat_complete(request: Request) -> JSONResponse:
        """POST /chat/complete - Non-streaming single completion."""
        body = await _json_body(request)
        if body is None or not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        conversation_id = body.get("conversation_id") or str(uuid4())
        try:
            result = await runner.complete_turn(conversation_id, body["message"])
        except SubmissionRejected as e:
            return _rejected(e)
        return JSONResponse(_result_json(conversation_id, result))

    async def title(request: Request) -> JSONResponse:
        """POST /title - Suggest a title for a first message."""
        body = await _json_body(request)
        if body is None or not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        return JSONResponse({"title": await runner.suggest_title(body["message"])})

    async def history(request: Request) -> JSONResponse:
        """GET /conversations/{id}/history - Durable turns."""
        conversation_id = request.path_params["conversation_id"]
        turns = await store.read(conversation_id)
        return JSONResponse({"conversation_id": conversation_id, "turns": _turns_json(turns)})

    async def list_notices(request: Request) -> JSONResponse:
        """GET /conversations/{id}/notices - System notices."""
        conversation_id = request.path_params["conversation_id"]
        return JSONResponse({
            "conversation_id": conversation_id,
            "notices": [n.to_dict() for n in notices.list(conversation_id)],
        })

    async def organize(request: Request) -> JSONResponse:
        """POST /conversations/{id}/organize - Summarize the whole history."""
        conversation_id = request.path_params["conversation_id"]
        try:
            turns = await compactor.organize(conversation_id)
        except SubmissionRejected as e:
            return _rejected(e)
        except CompactionError as e:
            return JSONResponse({"error": str(e)}, status_code=422)
        except StoreError as e:
            return _store_unavailable(e)
        return JSONResponse({"conversation_id": conversation_id, "turns": _turns_json(turns)})

    async def optimize(request: Request) -> JSONResponse:
        """POST /conversations/{id}/optimize - Optimize history for prompt caching."""
        conversation_id = request.path_params["conversation_id"]
        try:
            turns = await compactor.optimize_for_cache(conversation_id)
        except SubmissionRejected as e:
            return _rejected(e)
        except StoreError as e:
            return _store_unavailable(e)
        return JSONResponse({"conversation_id": conversation_id, "turns": _turns_json(turns)})

    async def edit(request: Request) -> JSONResponse:
        """POST /conversations/{id}/edit - Rewind to index and resend."""
        conversation_id = request.path_params["conversation_id"]
        body = await _json_body(request)
        if body is None or not body.get("message") or not isinstance(body.get("index"), int):
            return JSONResponse({"error": "Required fields: index (int), message"}, status_code=400)
        try:
            result = await runner.edit_and_resend(conversation_id, body["index"], body["message"])
        except SubmissionRejected as e:
            return _rejected(e)
        return JSONResponse(_result_json(conversation_id, result))

    async def delete_from(request: Request) -> JSONResponse:
        """DELETE /conversations/{id}/turns/{index} - Delete a turn and everything after it."""
        conversation_id = request.path_params["conversation_id"]
        try:
            turns = await runner.delete_from(conversation_id, request.path_params["index"])
        except SubmissionRejected as e:
            return _rejected(e)
        except StoreError as e:
            return _store_unavailable(e)
        return JSONResponse({"conversation_id": conversation_id, "turns": _turns_json(turns)})

    async def edit_turn(request: Request) -> JSONResponse:
        """PUT /conversations/{id}/turns/{index} - Replace an assistant turn's text."""
        conversation_id = request.path_params["conversation_id"]
        body = await _json_body(request)
        if body is None or not isinstance(body.get("text"), str):
            return JSONResponse({"error": "Missing required field: text"}, status_code=400)
        try:
            turns = await runner.edit_assistant_text(conversation_id, request.path_params["index"], body["text"])
        except SubmissionRejected as e:
            return _rejected(e)
        except EditError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except StoreError as e:
            return _store_unavailable(e)
        return JSONResponse({"conversation_id": conversation_id, "turns": _turns_json(turns)})

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Ids of all stored conversations."""
        try:
            conversation_ids = await store.conversation_ids()
        except StoreError as e:
            return _store_unavailable(e)
        return JSONResponse({"conversations": conversation_ids})

    async def clear(request: Request) -> JSONResponse:
        """DELETE /conversations/{id} - Delete history, notices and duplicate state."""
        conversation_id = request.path_params["conversation_id"]
        try:
            async with guard.exclusive(conversation_id):
                await store.delete(conversation_id)
        except SubmissionRejected as e:
            return _rejected(e)
        except StoreError as e:
            return _store_unavailable(e)
        notices.clear(conversation_id)
        guard.forget(conversation_id)
        return JSONResponse({"status": "cleared", "conversation_id": conversation_id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            await store.read("__health__")
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/complete", chat_complete, methods=["POST"]),
        Route("/title", title, methods=["POST"]),
        Route("/conversations/{conversation_id}/history", history),
        Route("/conversations/{conversation_id}/notices", list_notices),
        Route("/conversations/{conversation_id}/organize", organize, methods=["POST"]),
        Route("/conversations/{conversation_id}/optimize", optimize, methods=["POST"]),
        Route("/conversations", list_conversations),
        Route("/conversations/{conversation_id}/edit", edit, methods=["POST"]),
        Route("/conversations/{conversation_id}/turns/{index:int}", delete_from, methods=["DELETE"]),
        Route("/conversations/{conversation_id}/turns/{index:int}", edit_turn, methods=["PUT"]),
        Route("/conversations/{conversation_id}", clear, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)


def _event_json(conversation_id: str, event: ChatEvent) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": event.type,
        "text": event.text,
        "tool_id": event.tool_id,
        "tool_name": event.tool_name,
        "status": event.status,
        "round": event.round,
    }
    if event.result is not None:
        data["result"] = _result_json(conversation_id, event.result)
    return data
