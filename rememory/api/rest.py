"""REST API for Rememory.

Endpoints:
  GET    /api/persona                 - Caller's persona (or null)
  POST   /api/persona                 - Create the caller's persona
  PUT    /api/persona/{id}            - Update mutable profile fields
  DELETE /api/persona/{id}            - Cascade delete (typed confirmation)
  POST   /api/persona/{id}/start      - Start the session timer (idempotent)
  GET    /api/persona/{id}/chat       - Trailing page of messages
  POST   /api/persona/{id}/chat       - Run one conversational turn
  GET    /health                      - Health check (DB connectivity)

Every /api route needs a bearer token. Errors are returned as
{"error": {"code", "message", ...}}.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from rememory.api.auth import IdentityVerifier, authenticate
from rememory.api.rate_limit import SlidingWindowLimiter
from rememory.config import Settings
from rememory.conversation.orchestrator import TurnOrchestrator
from rememory.conversation.window import HIDDEN_KINDS
from rememory.errors import (
    PersonaNotFound,
    RateLimited,
    RememoryError,
    ValidationFailed,
)
from rememory.lifecycle.personas import PersonaManager
from rememory.lifecycle.schemas import (
    ChatRequest,
    DeleteRequest,
    MessageView,
    PersonaView,
    validation_details,
)
from rememory.lifecycle.timer import SessionTimer, compute_remaining_ms, remaining_days
from rememory.storage.database import Database
from rememory.storage.models import Message, Persona
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)


def _error_response(exc: RememoryError) -> JSONResponse:
    return JSONResponse({"error": exc.to_dict()}, status_code=exc.status_code)


def _internal_error(route: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", route, exc)
    return JSONResponse(
        {"error": {"code": "internal_error", "message": "Unexpected server error"}},
        status_code=500,
    )


def persona_view(persona: Persona) -> dict[str, Any]:
    remaining = compute_remaining_ms(persona.expires_at)
    view = PersonaView(
        id=persona.id,
        owner_id=persona.owner_id,
        name=persona.name,
        relationship=persona.relationship,
        user_nickname=persona.user_nickname,
        biography=persona.biography,
        speaking_style=persona.speaking_style,
        traits=persona.traits or [],
        key_memories=persona.key_memories or [],
        common_phrases=persona.common_phrases or [],
        voice_sample_url=persona.voice_sample_url,
        status=persona.status,
        created_at=persona.created_at,
        started_at=persona.started_at,
        expires_at=persona.expires_at,
        guidance_level=persona.guidance_level,
        reminder_sent=persona.reminder_sent,
        remaining_ms=remaining,
        remaining_days=remaining_days(remaining),
    )
    return view.model_dump(by_alias=True, mode="json")


def message_view(message: Message) -> dict[str, Any]:
    view = MessageView(
        id=str(message.id),
        sender=message.sender,
        kind=message.kind,
        text=message.text,
        timestamp=message.timestamp,
        meta=message.meta,
    )
    return view.model_dump(by_alias=True, mode="json")


def _persona_id(request: Request) -> UUID:
    try:
        return UUID(request.path_params["persona_id"])
    except ValueError:
        raise PersonaNotFound() from None


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailed("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ValidationFailed("JSON body must be an object")
    return body


def create_app(
    personas: PersonaManager,
    timer: SessionTimer,
    orchestrator: TurnOrchestrator,
    store: PersonaStore,
    database: Database,
    verifier: IdentityVerifier,
    settings: Settings,
    lifespan: Any | None = None,
    limiter: SlidingWindowLimiter | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    limiter = limiter or SlidingWindowLimiter.from_settings(settings)

    async def get_persona(request: Request) -> JSONResponse:
        """GET /api/persona - The caller's live persona, or null."""
        try:
            caller = await authenticate(request, verifier)
            persona = await personas.get_persona_by_owner(caller.uid)
            return JSONResponse(persona_view(persona) if persona else None)
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("GET /api/persona", e)

    async def create_persona(request: Request) -> JSONResponse:
        """POST /api/persona - Create the caller's persona."""
        try:
            caller = await authenticate(request, verifier)
            body = await _json_body(request)
            persona = await personas.create_persona(caller.uid, body)
            return JSONResponse({"id": str(persona.id)}, status_code=201)
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("POST /api/persona", e)

    async def update_persona(request: Request) -> Response:
        """PUT /api/persona/{id} - Update mutable profile fields."""
        try:
            caller = await authenticate(request, verifier)
            persona_id = _persona_id(request)
            body = await _json_body(request)
            await personas.update_persona(persona_id, caller.uid, body)
            return Response(status_code=204)
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("PUT /api/persona", e)

    async def delete_persona(request: Request) -> Response:
        """DELETE /api/persona/{id} - Cascade delete after typed confirmation."""
        try:
            caller = await authenticate(request, verifier)
            persona_id = _persona_id(request)
            body = await _json_body(request)
            try:
                data = DeleteRequest.model_validate(body)
            except ValidationError as e:
                raise ValidationFailed("Invalid delete request", validation_details(e)) from None
            await personas.delete_persona_cascade(persona_id, caller.uid, data.confirmation)
            return Response(status_code=204)
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("DELETE /api/persona", e)

    async def start_session(request: Request) -> Response:
        """POST /api/persona/{id}/start - Start the session timer."""
        try:
            caller = await authenticate(request, verifier)
            persona_id = _persona_id(request)
            await personas.get_owned(persona_id, caller.uid)
            await timer.start_session_if_needed(persona_id)
            return Response(status_code=204)
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("POST /api/persona/start", e)

    async def get_chat(request: Request) -> JSONResponse:
        """GET /api/persona/{id}/chat?limit=N - Trailing messages, oldest first."""
        try:
            caller = await authenticate(request, verifier)
            persona_id = _persona_id(request)
            raw_limit = request.query_params.get("limit", str(settings.history_page_default))
            try:
                limit = int(raw_limit)
            except ValueError:
                raise ValidationFailed("limit must be an integer") from None
            if limit < 1:
                raise ValidationFailed("limit must be positive")
            limit = min(limit, settings.history_page_max)

            await personas.get_owned(persona_id, caller.uid)
            messages = await store.tail_messages(persona_id, limit, exclude_kinds=HIDDEN_KINDS)
            return JSONResponse({"messages": [message_view(m) for m in messages]})
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("GET /api/persona/chat", e)

    async def post_chat(request: Request) -> JSONResponse:
        """POST /api/persona/{id}/chat - Run one conversational turn."""
        try:
            caller = await authenticate(request, verifier)
            if not limiter.allow(caller.uid):
                raise RateLimited()
            persona_id = _persona_id(request)
            body = await _json_body(request)
            try:
                data = ChatRequest.model_validate(body)
            except ValidationError as e:
                raise ValidationFailed("Invalid chat message", validation_details(e)) from None

            outcome = await orchestrator.handle_turn(
                persona_id,
                caller.uid,
                data.text,
                kind=data.kind,
                client_message_id=data.client_message_id,
            )
            return JSONResponse({
                "personaStatus": outcome.persona_status,
                "remainingMs": outcome.remaining_ms,
                "guidanceLevel": outcome.guidance_level,
                "messages": [message_view(m) for m in outcome.messages],
                "summaryAppended": outcome.summary_appended,
            })
        except RememoryError as e:
            return _error_response(e)
        except Exception as e:
            return _internal_error("POST /api/persona/chat", e)

    async def health(request: Request) -> JSONResponse:
        """GET /health - DB connectivity check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "database": "connected"})
        except Exception as e:
            logger.warning("Health check failed: %s", e)
            return JSONResponse(
                {"status": "unhealthy", "database": "disconnected"},
                status_code=503,
            )

    routes = [
        Route("/api/persona", get_persona, methods=["GET"]),
        Route("/api/persona", create_persona, methods=["POST"]),
        Route("/api/persona/{persona_id}", update_persona, methods=["PUT"]),
        Route("/api/persona/{persona_id}", delete_persona, methods=["DELETE"]),
        Route("/api/persona/{persona_id}/start", start_session, methods=["POST"]),
        Route("/api/persona/{persona_id}/chat", get_chat, methods=["GET"]),
        Route("/api/persona/{persona_id}/chat", post_chat, methods=["POST"]),
        Route("/health", health),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["authorization", "content-type"],
        )
    ]

    kwargs: dict[str, Any] = {"routes": routes, "middleware": middleware}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
