"""Chat API routes."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from chatgate.adapters.chat_api.mapper import from_chat_record, to_chat_record, to_conversation, to_options
from chatgate.adapters.chat_api.stream_utils import build_streaming_response
from chatgate.config.settings import settings
from chatgate.core.chat_service import ChatService, build_chat_service
from chatgate.core.errors import AllProvidersExhaustedError, ChatGateError, CommandHandlerError, InputError
from chatgate.core.models import ErrorReply
from chatgate.storage import create_chat_store
from chatgate.storage.chat_store import ChatStore
from chatgate.util.logger import logger


router = APIRouter()
_chat_service: ChatService | None = None
_chat_store: ChatStore | None = None
_DEBUG_REQUEST_BODY_MAX_CHARS = 4000


def set_chat_service(service: ChatService | None) -> None:
    global _chat_service
    _chat_service = service


def _get_chat_service() -> ChatService:
    global _chat_service
    if _chat_service is None:
        _chat_service = build_chat_service()
    return _chat_service


def _get_chat_store() -> ChatStore:
    global _chat_store
    if _chat_store is None:
        _chat_store = create_chat_store()
    return _chat_store


async def _maybe_offload(func: Any, *args: Any, **kwargs: Any) -> Any:
    if settings.enable_thread_offload:
        return await asyncio.to_thread(func, *args, **kwargs)
    return func(*args, **kwargs)


async def _store_call(method_name: str, *args: Any, **kwargs: Any) -> Any:
    method = getattr(_get_chat_store(), method_name)
    return await _maybe_offload(method, *args, **kwargs)


def _error_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    reply = ErrorReply(error=reason, detail=(detail or "").strip() or None)
    return JSONResponse(status_code=status_code, content=reply.model_dump(exclude_none=True))


def _error_from_exception(exc: ChatGateError) -> JSONResponse:
    if isinstance(exc, InputError):
        return _error_response(400, "invalid_request", str(exc))
    # upstream detail stays out of production responses
    detail = str(exc) if settings.expose_error_detail else None
    if isinstance(exc, CommandHandlerError):
        return _error_response(500, "command_failed", detail)
    if isinstance(exc, AllProvidersExhaustedError):
        if detail and exc.attempts:
            detail = "; ".join(str(item) for item in exc.failures)
        return _error_response(500, "all_providers_exhausted", detail)
    return _error_response(500, "chat_failed", detail)


def _log_request_if_debug(request: Request, payload: dict[str, Any]) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    messages = payload.get("messages")
    logger.debug(
        "incoming request method=%s path=%s messages=%s stream=%s provider=%s model=%s",
        request.method,
        request.url.path,
        len(messages) if isinstance(messages, list) else "-",
        payload.get("stream"),
        payload.get("provider"),
        payload.get("model"),
    )
    if not settings.log_full_request_body:
        return
    try:
        body_str = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        body_str = str(payload)
    logger.debug("incoming request body (%d chars):\n%s", len(body_str), body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS])


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InputError("request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InputError("request body must be a JSON object")
    return payload


@router.post("/api/chat")
async def chat(request: Request):
    try:
        payload = await _read_json_object(request)
        _log_request_if_debug(request, payload)
        conversation = to_conversation(payload)
        options = to_options(payload)
    except InputError as exc:
        logger.info("chat request rejected path=%s error=%s", request.url.path, exc)
        return _error_from_exception(exc)

    service = _get_chat_service()
    ctx = service.new_context(conversation, options)
    if options.stream:
        try:
            stream = await service.stream_chat(conversation, options, ctx, is_disconnected=request.is_disconnected)
        except ChatGateError as exc:
            return _error_from_exception(exc)
        return build_streaming_response(stream, on_close=stream.aclose)

    try:
        reply = await service.send_chat(conversation, options, ctx)
    except ChatGateError as exc:
        return _error_from_exception(exc)
    return reply.model_dump(exclude_none=True)


@router.post("/api/chats")
async def save_chat(request: Request):
    try:
        record = to_chat_record(await _read_json_object(request))
    except InputError as exc:
        return _error_response(400, "invalid_request", str(exc))
    try:
        await _store_call("upsert", record)
    except sqlite3.Error as exc:
        logger.error("chat store write failed user_id=%s chat_id=%s error=%s", record.user_id, record.id, exc)
        return _error_response(500, "chat_store_error", str(exc) if settings.expose_error_detail else None)
    logger.info("chat saved user_id=%s chat_id=%s messages=%d", record.user_id, record.id, len(record.messages))
    return {"id": record.id}


@router.get("/api/chats/{user_id}")
async def list_chats(user_id: str):
    try:
        records = await _store_call("list_by_user", user_id)
    except sqlite3.Error as exc:
        logger.error("chat store read failed user_id=%s error=%s", user_id, exc)
        return _error_response(500, "chat_store_error", str(exc) if settings.expose_error_detail else None)
    return [from_chat_record(record) for record in records]


@router.get("/api/chats/{user_id}/{chat_id}")
async def get_chat(user_id: str, chat_id: str):
    try:
        record = await _store_call("get_one", user_id, chat_id)
    except sqlite3.Error as exc:
        logger.error("chat store read failed user_id=%s chat_id=%s error=%s", user_id, chat_id, exc)
        return _error_response(500, "chat_store_error", str(exc) if settings.expose_error_detail else None)
    if record is None:
        return JSONResponse(status_code=404, content={"error": "Chat not found"})
    return from_chat_record(record)
