"""
Surface side of the "perform sign-in" exchange.

send() never raises for provider or transport trouble: anything that is not a
well-formed success comes back as LogInResponse(success=False) and the sign-in
screen shows its inline message.
"""
from typing import Optional

import httpx
from pydantic import ValidationError

from hme.api.schemas import LogInRequest, LogInResponse
from hme.observability.logging import log
from hme.settings import settings
from hme.store.session_store import SessionStore


class HttpSignInMessenger:
    def __init__(
        self,
        base_url: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
    ):
        self.base_url = (base_url or settings.SIGNIN_SERVICE_URL).rstrip("/")
        self.api_key = settings.API_KEY if api_key is None else api_key
        self._http = http

    def _headers(self) -> dict:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["x-api-key"] = self.api_key
        return h

    async def send(self, request: LogInRequest) -> LogInResponse:
        url = f"{self.base_url}/auth/signin"
        try:
            if self._http is not None:
                resp = await self._http.post(url, json=request.model_dump(), headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SEC) as client:
                    resp = await client.post(url, json=request.model_dump(), headers=self._headers())
        except httpx.TransportError as e:
            log(event="signin_request_exception", url=url, errorType=type(e).__name__)
            return LogInResponse(success=False)

        if resp.status_code != 200:
            log(event="signin_request_non200", url=url, statusCode=int(resp.status_code))
            return LogInResponse(success=False)
        try:
            return LogInResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            log(event="signin_response_malformed", url=url, errorType=type(e).__name__)
            return LogInResponse(success=False)


class LocalSignInMessenger:
    """In-process variant for single-process setups (e.g. STORAGE_BACKEND=memory)."""

    def __init__(self, store: SessionStore, http: Optional[httpx.AsyncClient] = None):
        self.store = store
        self._http = http

    async def send(self, request: LogInRequest) -> LogInResponse:
        from hme.api.routes import perform_sign_in

        return await perform_sign_in(request, self.store, self._http)
