import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from hme.icloud.client import PREMIUM_MAIL_SERVICE, ICloudClient
from hme.icloud.errors import NotAuthenticated, PremiumMailError, SessionInvalid
from hme.observability.logging import log


@dataclass
class HmeEmail:
    hme: str = ""
    anonymousId: str = ""
    label: str = ""
    note: str = ""
    forwardToEmail: str = ""
    origin: str = ""
    domain: str = ""
    recipientMailId: str = ""
    createTimestamp: int = 0
    isActive: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HmeEmail":
        # Apple adds fields over time; keep only the ones we model
        allowed = set(inspect.signature(cls).parameters.keys())
        return cls(**{k: v for k, v in (data or {}).items() if k in allowed and v is not None})


@dataclass
class HmeList:
    hmeEmails: List[HmeEmail] = field(default_factory=list)
    selectedForwardTo: Optional[str] = None
    forwardToEmails: List[str] = field(default_factory=list)

    def newest_first(self) -> List[HmeEmail]:
        return sorted(self.hmeEmails, key=lambda e: e.createTimestamp, reverse=True)


class PremiumMailSettings:
    """Hide My Email RPCs. Only usable once the client is authenticated."""

    def __init__(self, client: ICloudClient):
        if not client.authenticated:
            raise NotAuthenticated("Hide My Email requires a verified iCloud session")
        self.client = client
        self.base_url = client.webservice_url(PREMIUM_MAIL_SERVICE)

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self.client.request(method, f"{self.base_url}/{path}", json=payload)
        # 421 is how iCloud web services report an expired session
        if resp.status_code in (401, 421):
            log(event="hme_call_session_invalid", path=path, statusCode=int(resp.status_code))
            raise SessionInvalid(f"{path} rejected the session ({resp.status_code})")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not (200 <= resp.status_code < 300) or not body.get("success"):
            error = body.get("error") or {}
            message = error.get("errorMessage") if isinstance(error, dict) else None
            code = error.get("errorCode") if isinstance(error, dict) else None
            log(event="hme_call_failed", path=path, statusCode=int(resp.status_code), errorCode=code or "")
            raise PremiumMailError(message or f"{path} failed ({resp.status_code})", error_code=code or "")
        return body.get("result")

    async def generate_hme(self) -> str:
        result = await self._call("POST", "v1/hme/generate", {"langCode": "en-us"})
        return str((result or {}).get("hme") or "")

    async def reserve_hme(self, hme: str, label: str, note: Optional[str] = None) -> HmeEmail:
        result = await self._call("POST", "v1/hme/reserve", {"hme": hme, "label": label, "note": note or ""})
        return HmeEmail.from_dict((result or {}).get("hme") or {})

    async def list_hme(self) -> HmeList:
        result = await self._call("GET", "v2/hme/list") or {}
        return HmeList(
            hmeEmails=[HmeEmail.from_dict(e) for e in result.get("hmeEmails") or [] if isinstance(e, dict)],
            selectedForwardTo=result.get("selectedForwardTo"),
            forwardToEmails=list(result.get("forwardToEmails") or []),
        )

    async def update_hme_metadata(self, anonymous_id: str, label: str, note: Optional[str] = None) -> None:
        await self._call("POST", "v1/hme/updateMetaData", {"anonymousId": anonymous_id, "label": label, "note": note or ""})

    async def deactivate_hme(self, anonymous_id: str) -> None:
        await self._call("POST", "v1/hme/deactivate", {"anonymousId": anonymous_id})

    async def reactivate_hme(self, anonymous_id: str) -> None:
        await self._call("POST", "v1/hme/reactivate", {"anonymousId": anonymous_id})

    async def delete_hme(self, anonymous_id: str) -> None:
        await self._call("POST", "v1/hme/delete", {"anonymousId": anonymous_id})

    async def update_forward_to_hme(self, forward_to_email: str) -> None:
        await self._call("POST", "v1/hme/updateForwardTo", {"forwardToEmail": forward_to_email})
