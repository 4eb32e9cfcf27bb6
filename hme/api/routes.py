"""
Background sign-in component.

Surfaces never talk to Apple's sign-in endpoint themselves: they post the
credentials here, this component performs the exchange, writes the resulting
session data to the shared store and answers with the action the surface
should apply next. Credentials are forwarded verbatim and never stored.
"""
from typing import Optional

import httpx
from fastapi import APIRouter, Depends

from hme.api.auth import require_api_key
from hme.api.schemas import HealthResponse, LogInRequest, LogInResponse, SessionStatus
from hme.icloud.client import ICloudClient, is_authenticated
from hme.icloud.errors import HmeError
from hme.icloud.session import ICloudSession, SessionData, is_empty_session
from hme.observability.logging import log
from hme.store.session_store import PHASE, SESSION, SessionStore
from hme.store.storage import build_storage

router = APIRouter()

_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        _store = SessionStore(build_storage())
    return _store


def get_http_client() -> Optional[httpx.AsyncClient]:
    # None: ICloudClient opens (and closes) its own connection pool per request
    return None


def _sign_in_seed(stored: SessionData) -> SessionData:
    """
    Start a sign-in from the stored headers/cookies only (trust token, scnt...).
    A previous login's webservices/dsInfo must not make the new session look
    authenticated before accountLogin has run again.
    """
    seed: SessionData = {"headers": dict(stored.get("headers") or {}), "webservices": {}}
    if stored.get("cookies"):
        seed["cookies"] = dict(stored["cookies"])
    return seed


async def perform_sign_in(
    req: LogInRequest, store: SessionStore, http: Optional[httpx.AsyncClient] = None
) -> LogInResponse:
    stored = await store.get_session_data()
    session = ICloudSession(_sign_in_seed(stored), store.set_session_data)
    client = ICloudClient(session, http=http)
    try:
        result = await client.sign_in(req.email, req.password)
        if not result.requires_2fa:
            # Trusted device: no second factor, finalize right away
            await client.account_login()
    except HmeError as e:
        log(event="signin_failed", errorType=type(e).__name__, error=str(e)[:200])
        return LogInResponse(success=False)
    finally:
        await client.aclose()

    # Every mutation above was awaited through store.set_session_data, so the
    # session is durable before the surface hears about it.
    log(event="signin_succeeded", requires2fa=bool(result.requires_2fa), authenticated=client.authenticated)
    return LogInResponse(success=True, action="SUCCESSFUL_SIGN_IN")


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse()


@router.post("/auth/signin", response_model=LogInResponse)
async def sign_in(
    req: LogInRequest,
    _=Depends(require_api_key),
    store: SessionStore = Depends(get_session_store),
    http: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    return await perform_sign_in(req, store, http)


@router.get("/session/status", response_model=SessionStatus)
async def session_status(_=Depends(require_api_key), store: SessionStore = Depends(get_session_store)):
    """Phase and session presence as persisted; never returns token values."""
    phase = await store.get_phase()
    data = await store.get_session_data()
    phase_meta = await store.metadata(PHASE)
    session_meta = await store.metadata(SESSION)
    return SessionStatus(
        phase=phase.value,
        sessionPresent=not is_empty_session(data),
        authenticated=is_authenticated(data),
        sessionWrittenAt=session_meta["writtenAt"],
        sessionWriter=session_meta["writer"],
        phaseWrittenAt=phase_meta["writtenAt"],
        phaseWriter=phase_meta["writer"],
    )
