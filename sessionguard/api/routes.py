from __future__ import annotations

import asyncio
from typing import Optional, Set

from fastapi import APIRouter, Depends, Header, Request

from sessionguard.api.schemas import HealthResponse, IdentityResponse, LogoutResponse
from sessionguard.logging import bind_subject, get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    ExpiredSessionError,
    RevokedError,
    ServiceUnavailableError,
    TokenExpiredServiceError,
)
from sessionguard.service.runtime import get_runtime
from sessionguard.service.verifier import TokenExpiredError, TokenVerificationError
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import SessionStatus, VerifiedIdentity

logger = get_logger(__name__)

router = APIRouter()

# Strong references to fire-and-forget activity updates until they finish
_background_tasks: Set[asyncio.Task] = set()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _verify(authorization: Optional[str], *, missing_message: str) -> VerifiedIdentity:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError(missing_message)
    try:
        return get_runtime().verifier.verify(token)
    except TokenExpiredError as exc:
        raise TokenExpiredServiceError("Token has expired", detail={"reason": str(exc)}) from exc
    except TokenVerificationError as exc:
        logger.warning("token_verification_failed", error=str(exc))
        raise AuthenticationError("Invalid authentication token", detail={"reason": str(exc)}) from exc


async def _update_activity(subject_id: str) -> None:
    try:
        await get_runtime().engine.update_last_activity(subject_id)
    except Exception as exc:
        logger.error(
            "activity_update_failed",
            subject_id=subject_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def _schedule_activity_update(subject_id: str) -> None:
    task = asyncio.create_task(_update_activity(subject_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def require_session(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> VerifiedIdentity:
    """Authenticate the caller and keep their session alive.

    A valid session is extended in the background. With no session one is
    created, unless the token predates the subject's last logout. An expired
    session is reported as ``SESSION_EXPIRED`` and never recreated.
    """
    identity = _verify(authorization, missing_message="Authorization header required")
    engine = get_runtime().engine
    subject_id = identity.subject_id
    bind_subject(subject_id)
    request.state.session_created = False

    try:
        status = await engine.validate(subject_id)
    except StoreUnavailableError as exc:
        logger.error("session_validation_unavailable", subject_id=subject_id, error=exc.message)
        raise ServiceUnavailableError("User sessions could not be validated") from exc

    if status is SessionStatus.VALID:
        if identity.issued_at is not None and engine.revoked_locally(subject_id, identity.issued_at):
            logger.warning("revoked_token_rejected", subject_id=subject_id)
            raise RevokedError()
        _schedule_activity_update(subject_id)
        return identity

    try:
        created = await engine.ensure_session(subject_id, identity.issued_at)
    except RevokedError:
        raise
    except ExpiredSessionError as exc:
        logger.info("session_expired", subject_id=subject_id)
        raise ExpiredSessionError("Session has expired due to inactivity") from exc
    except StoreUnavailableError as exc:
        logger.error("session_creation_unavailable", subject_id=subject_id, error=exc.message)
        raise ServiceUnavailableError("User sessions could not be validated") from exc

    request.state.session_created = created
    return identity


async def require_token(authorization: Optional[str] = Header(None)) -> VerifiedIdentity:
    """Verify the bearer token only; the session may already be gone."""
    return _verify(authorization, missing_message="Authentication required for logout")


@router.post("/auth/logout", response_model=LogoutResponse, tags=["auth"])
async def logout(identity: VerifiedIdentity = Depends(require_token)):
    bind_subject(identity.subject_id)
    await get_runtime().engine.clear_session(identity.subject_id)
    logger.info("user_logged_out", subject_id=identity.subject_id)
    return LogoutResponse()


@router.get("/auth/me", response_model=IdentityResponse, response_model_by_alias=True, tags=["auth"])
async def me(request: Request, identity: VerifiedIdentity = Depends(require_session)):
    return IdentityResponse(
        subject_id=identity.subject_id,
        email=identity.email,
        display_name=identity.display_name,
        session_created=getattr(request.state, "session_created", False),
    )


@router.get("/healthz", response_model=HealthResponse, response_model_by_alias=True, tags=["health"])
async def healthz():
    runtime = get_runtime()
    return HealthResponse(
        store=type(runtime.store).__name__,
        cached_sessions=len(runtime.cache),
        pending_writes=runtime.synchronizer.pending_count,
    )
