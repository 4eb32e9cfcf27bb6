"""
iCloud authentication client
----------------------------
Wraps an ICloudSession and speaks Apple's idmsa (auth) and setup endpoints.
Payload shapes are Apple's; they are passed through, not reinterpreted.

Second-factor path is strictly ordered: verify code -> trust device ->
accountLogin. complete_second_factor() runs the three inside one staged
session block, so a failure at any step leaves the persisted SessionData
exactly as it was before the attempt.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from hme.icloud.errors import (
    AuthenticationRejected,
    HmeError,
    NotAuthenticated,
    SessionInvalid,
    TransientNetworkError,
    VerificationRejected,
)
from hme.icloud.session import PERSISTED_HEADERS, ICloudSession
from hme.observability.logging import log
from hme.settings import settings
from hme.utils.time import elapsed_ms

CODE_LENGTH = 6
CODE_LENGTH_MESSAGE = f"Please fill in all of the {CODE_LENGTH} digits of the code."

PREMIUM_MAIL_SERVICE = "premiummailsettings"


@dataclass(frozen=True)
class SignInResult:
    requires_2fa: bool
    status_code: int


def is_well_formed_code(code: str) -> bool:
    return isinstance(code, str) and len(code) == CODE_LENGTH and code.isdigit()


def is_authenticated(data: Dict[str, Any]) -> bool:
    service = (data.get("webservices") or {}).get(PREMIUM_MAIL_SERVICE)
    return bool(data.get("dsInfo")) and isinstance(service, dict) and service.get("status") == "active"


def _ok(resp: httpx.Response) -> bool:
    return 200 <= resp.status_code < 300


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class ICloudClient:
    def __init__(self, session: ICloudSession, http: Optional[httpx.AsyncClient] = None):
        self.session = session
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SEC)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------
    @property
    def authenticated(self) -> bool:
        """True only once accountLogin has stored dsInfo and an active Hide My Email service."""
        return is_authenticated(self.session.data)

    @property
    def requires_2fa(self) -> bool:
        headers = self.session.data.get("headers") or {}
        return bool(headers.get("X-Apple-ID-Session-Id")) and not self.authenticated

    def webservice_url(self, name: str) -> str:
        service = (self.session.data.get("webservices") or {}).get(name)
        if not isinstance(service, dict) or service.get("status") != "active" or not service.get("url"):
            raise NotAuthenticated(f"Webservice {name!r} is not available for this session")
        return str(service["url"]).rstrip("/")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _base_headers(self) -> Dict[str, str]:
        h = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Origin": settings.ICLOUD_ORIGIN,
            "Referer": f"{settings.ICLOUD_ORIGIN}/",
        }
        h.update(self.session.data.get("headers") or {})
        cookies = self.session.data.get("cookies") or {}
        if cookies:
            h["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
        return h

    def _auth_headers(self) -> Dict[str, str]:
        h = self._base_headers()
        h.update({
            "X-Apple-Widget-Key": settings.ICLOUD_WIDGET_KEY,
            "X-Apple-OAuth-Client-Id": settings.ICLOUD_WIDGET_KEY,
            "X-Apple-OAuth-Client-Type": "firstPartyAuth",
            "X-Apple-OAuth-Redirect-URI": settings.ICLOUD_ORIGIN,
            "X-Apple-OAuth-Require-Grant-Code": "true",
            "X-Apple-OAuth-Response-Mode": "web_message",
            "X-Apple-OAuth-Response-Type": "code",
        })
        return h

    async def _send(
        self,
        method: str,
        url: str,
        *,
        auth: bool = False,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = self._auth_headers() if auth else self._base_headers()
        t0 = time.monotonic()
        try:
            resp = await self._http.request(method, url, headers=headers, json=json, params=params)
        except httpx.RequestError as e:
            log(
                event="icloud_request_exception",
                method=method,
                url=url,
                elapsedMs=elapsed_ms(t0),
                errorType=type(e).__name__,
                error=str(e)[:300],
            )
            raise TransientNetworkError(f"{method} {url} failed: {type(e).__name__}") from e

        log(
            event="icloud_request",
            method=method,
            url=url,
            statusCode=int(resp.status_code),
            elapsedMs=elapsed_ms(t0),
        )
        await self._absorb(resp)
        return resp

    async def _absorb(self, resp: httpx.Response) -> None:
        """Persist the session-carrying headers and cookies a response handed back."""
        headers = {}
        for name in PERSISTED_HEADERS:
            value = resp.headers.get(name)
            if value:
                headers[name] = value
        cookies = {c.name: c.value for c in resp.cookies.jar if c.value}
        await self.session.merge(headers=headers, cookies=cookies)

    async def request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Authenticated request for business calls. Fails fast without a verified session."""
        if not self.authenticated:
            raise NotAuthenticated("Sign in and complete 2FA before calling this service")
        return await self._send(method, url, json=json)

    # ------------------------------------------------------------------
    # Authentication protocol
    # ------------------------------------------------------------------
    async def sign_in(self, account_name: str, password: str) -> SignInResult:
        trust_token = (self.session.data.get("headers") or {}).get("X-Apple-TwoSV-Trust-Token")
        resp = await self._send(
            "POST",
            f"{settings.ICLOUD_AUTH_URL}/signin",
            auth=True,
            params={"isRememberMeEnabled": "true"},
            json={
                "accountName": account_name,
                "password": password,
                "rememberMe": True,
                "trustTokens": [trust_token] if trust_token else [],
            },
        )
        # 409 = credentials accepted, second factor pending
        if resp.status_code == 409:
            return SignInResult(requires_2fa=True, status_code=409)
        if _ok(resp):
            return SignInResult(requires_2fa=False, status_code=resp.status_code)
        if resp.status_code >= 500:
            raise TransientNetworkError(f"Sign-in unavailable ({resp.status_code})")
        raise AuthenticationRejected(f"Sign-in rejected ({resp.status_code})")

    async def verify_2fa_code(self, code: str) -> None:
        if not is_well_formed_code(code):
            raise VerificationRejected(CODE_LENGTH_MESSAGE)
        resp = await self._send(
            "POST",
            f"{settings.ICLOUD_AUTH_URL}/verify/trusteddevice/securitycode",
            auth=True,
            json={"securityCode": {"code": code}},
        )
        if not _ok(resp):
            raise VerificationRejected(f"Code rejected ({resp.status_code})")

    async def trust_device(self) -> None:
        resp = await self._send("GET", f"{settings.ICLOUD_AUTH_URL}/2sv/trust", auth=True)
        if not _ok(resp):
            raise VerificationRejected(f"Device trust failed ({resp.status_code})")

    async def account_login(self) -> None:
        headers = self.session.data.get("headers") or {}
        ds_web_auth_token = headers.get("X-Apple-Session-Token")
        if not ds_web_auth_token:
            raise AuthenticationRejected("No session token to finalize the login with")

        resp = await self._send(
            "POST",
            f"{settings.ICLOUD_SETUP_URL}/accountLogin",
            json={
                "dsWebAuthToken": ds_web_auth_token,
                "accountCountryCode": headers.get("X-Apple-ID-Account-Country", ""),
                "extended_login": True,
                "trustToken": headers.get("X-Apple-TwoSV-Trust-Token", ""),
            },
        )
        if not _ok(resp):
            raise AuthenticationRejected(f"accountLogin failed ({resp.status_code})")

        body = _json_or_empty(resp)
        data = dict(self.session.data)
        data["webservices"] = body.get("webservices") or {}
        data["dsInfo"] = body.get("dsInfo") or {}
        await self.session.set_data(data)

    async def complete_second_factor(self, code: str) -> None:
        """verify -> trust -> accountLogin as one unit; reported as a single VerificationRejected."""
        if not is_well_formed_code(code):
            raise VerificationRejected(CODE_LENGTH_MESSAGE)

        step = "verify"
        try:
            async with self.session.staged():
                await self.verify_2fa_code(code)
                step = "trust"
                await self.trust_device()
                step = "accountLogin"
                await self.account_login()
        except HmeError as e:
            log(event="icloud_2fa_failed", step=step, errorType=type(e).__name__, error=str(e)[:300])
            raise VerificationRejected(f"2FA failed at {step}") from e
        log(event="icloud_2fa_completed")

    async def validate_token(self) -> None:
        """Lightweight probe. Raises SessionInvalid on anything but a 2xx; never mutates data."""
        try:
            resp = await self._http.request(
                "POST", f"{settings.ICLOUD_SETUP_URL}/validate", headers=self._base_headers()
            )
        except httpx.RequestError as e:
            log(event="icloud_validate_exception", errorType=type(e).__name__)
            raise SessionInvalid(f"validate failed: {type(e).__name__}") from e
        log(event="icloud_validate", statusCode=int(resp.status_code))
        if not _ok(resp):
            raise SessionInvalid(f"validate returned {resp.status_code}")

    async def refresh_session(self) -> None:
        """Sync point: rebind to the persisted SessionData another context may have written."""
        await self.session.refresh()

    async def log_out(self) -> None:
        """Best-effort remote logout; local data is cleared unconditionally afterwards."""
        try:
            if self.session.present:
                trust = bool(settings.TRUST_BROWSER_ON_LOGOUT)
                resp = await self._send(
                    "POST",
                    f"{settings.ICLOUD_SETUP_URL}/logout",
                    json={"trustBrowsers": trust, "allBrowsers": trust},
                )
                if not _ok(resp):
                    log(event="icloud_logout_remote_rejected", statusCode=int(resp.status_code))
        except Exception as e:
            # Any remote or header-persist failure; the local clear below still runs
            log(event="icloud_logout_remote_failed", errorType=type(e).__name__, error=str(e)[:300])
        finally:
            await self.session.reset()
