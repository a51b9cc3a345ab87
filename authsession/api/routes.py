from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import ValidationError as PydanticValidationError

from authsession.api.schemas import (
    AuthenticateResponse,
    Credentials,
    Envelope,
    LoginResponse,
    SessionBody,
)
from authsession.config import Settings
from authsession.logging import get_logger, short_id
from authsession.service.credentials import normalize_email
from authsession.service.errors import SessionRefreshError
from authsession.service.protocols import CredentialService, SessionService
from authsession.storage.models import Session, ensure_utc

logger = get_logger(__name__)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | list] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _read_credentials(request: Request) -> Credentials:
    """Parse email and password from a JSON body or an urlencoded/multipart form."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            payload = await request.json()
        else:
            payload = dict(await request.form())
    except ValueError:
        raise _http_error("validation_error", "malformed request body", status_code=400)
    if not isinstance(payload, dict):
        raise _http_error("validation_error", "malformed request body", status_code=400)
    try:
        return Credentials.model_validate(payload)
    except PydanticValidationError as exc:
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        raise _http_error(
            "validation_error", "email and password are required", status_code=400, details=details
        )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _session_body(session: Session) -> SessionBody:
    return SessionBody(user_id=session.user_id, expires_at=ensure_utc(session.expires_at))


def build_router(
    sessions: SessionService,
    credentials: CredentialService,
    settings: Settings,
) -> APIRouter:
    """Build the auth routes around the given session and credential services.

    Service calls hash passwords or touch storage, so they run in a worker
    thread to keep the event loop free.
    """
    router = APIRouter(tags=["auth"])
    cookie_name = settings.session_cookie_name

    def _set_session_cookie(response: Response, token: str, session: Session) -> None:
        response.set_cookie(
            cookie_name,
            token,
            httponly=True,
            secure=settings.session_cookie_secure,
            samesite="lax",
            expires=ensure_utc(session.expires_at),
            path="/",
        )

    def _request_token(request: Request) -> str:
        token = request.cookies.get(cookie_name) or _bearer_token(
            request.headers.get("authorization")
        )
        if not token:
            raise _http_error("validation_error", "missing session token", status_code=400)
        return token

    async def _start_session(user_id: str, response: Response) -> LoginResponse:
        token = await asyncio.to_thread(sessions.generate_token)
        session = await asyncio.to_thread(sessions.create_session, token, user_id)
        _set_session_cookie(response, token, session)
        return LoginResponse(session=_session_body(session), token=token)

    @router.post("/signup", response_model=Envelope, status_code=201)
    async def signup(request: Request, response: Response):
        """Register a user, then log them in."""
        body = await _read_credentials(request)
        await asyncio.to_thread(credentials.sign_up, body.email, body.password)
        login = await _start_session(normalize_email(body.email), response)
        return Envelope(status="ok", data=login.model_dump(mode="json"))

    @router.post("/login", response_model=Envelope)
    async def login(request: Request, response: Response):
        body = await _read_credentials(request)
        await asyncio.to_thread(credentials.sign_in, body.email, body.password)
        login = await _start_session(normalize_email(body.email), response)
        return Envelope(status="ok", data=login.model_dump(mode="json"))

    @router.post("/authenticate", response_model=Envelope)
    async def authenticate(request: Request):
        """Return the identity bound to the presented session token.

        A failed sliding refresh still authenticates the request; the session
        keeps its previous expiry.
        """
        token = _request_token(request)
        try:
            session = await asyncio.to_thread(sessions.validate_session, token)
        except SessionRefreshError as exc:
            logger.warning(
                "session_refresh_failed",
                session=short_id(exc.session.id),
                error=exc.message,
            )
            session = exc.session
        data = AuthenticateResponse(
            user_id=session.user_id, expires_at=ensure_utc(session.expires_at)
        )
        return Envelope(status="ok", data=data.model_dump(mode="json"))

    @router.post("/logout", response_model=Envelope)
    async def logout(request: Request, response: Response):
        token = _request_token(request)
        await asyncio.to_thread(sessions.invalidate_session, token)
        response.delete_cookie(
            cookie_name,
            path="/",
            secure=settings.session_cookie_secure,
            httponly=True,
            samesite="lax",
        )
        return Envelope(status="ok", data={"message": "logged out"})

    return router
