"""
Session data bag + persistence/refresh hooks.

SessionData is the opaque record iCloud needs to resume a session:
  - headers:     the Apple session headers echoed back on every request
  - webservices: service name -> {"url", "status"} (set by accountLogin)
  - dsInfo:      account info (set by accountLogin)
  - cookies:     cookies set by Apple's endpoints (there is no browser jar here)

It is meaningful only together with the persisted phase. The persisted copy is
shared process-wide; the in-memory copy here belongs to one client.
"""
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

SessionData = Dict[str, Any]

EMPTY_SESSION_DATA: SessionData = {"headers": {}, "webservices": {}}

# Response headers that carry the session; everything else is request-scoped
PERSISTED_HEADERS = (
    "X-Apple-ID-Account-Country",
    "X-Apple-ID-Session-Id",
    "X-Apple-Session-Token",
    "X-Apple-TwoSV-Trust-Token",
    "scnt",
)

PersistCallback = Callable[[SessionData], Awaitable[None]]
RefreshCallback = Callable[[], Awaitable[SessionData]]


def empty_session() -> SessionData:
    return copy.deepcopy(EMPTY_SESSION_DATA)


def copy_session(data: Optional[SessionData]) -> SessionData:
    return copy.deepcopy(data) if data else empty_session()


def is_empty_session(data: Optional[SessionData]) -> bool:
    if not data:
        return True
    return not any(data.get(k) for k in ("headers", "webservices", "dsInfo", "cookies"))


def normalize_session(raw: Any) -> SessionData:
    """Coerce whatever storage handed back into a well-formed SessionData."""
    if not isinstance(raw, dict):
        return empty_session()
    data = copy.deepcopy(raw)
    if not isinstance(data.get("headers"), dict):
        data["headers"] = {}
    if not isinstance(data.get("webservices"), dict):
        data["webservices"] = {}
    return data


class ICloudSession:
    def __init__(
        self,
        data: Optional[SessionData],
        persist: PersistCallback,
        refresh_callback: Optional[RefreshCallback] = None,
    ):
        self._data = normalize_session(data)
        self._persist = persist
        self._refresh_callback = refresh_callback
        self._pending: Optional[SessionData] = None

    @property
    def data(self) -> SessionData:
        return self._pending if self._pending is not None else self._data

    @property
    def present(self) -> bool:
        return not is_empty_session(self.data)

    @property
    def staging(self) -> bool:
        return self._pending is not None

    async def set_data(self, data: SessionData) -> None:
        data = normalize_session(data)
        if self._pending is not None:
            self._pending = data
            return
        self._data = data
        await self._persist(copy_session(data))

    async def merge(self, headers: Optional[Dict[str, str]] = None, cookies: Optional[Dict[str, str]] = None) -> None:
        """Fold session headers/cookies from a provider response into the data (one write)."""
        if not headers and not cookies:
            return
        data = copy_session(self.data)
        if headers:
            data["headers"].update(headers)
        if cookies:
            jar = data.get("cookies") if isinstance(data.get("cookies"), dict) else {}
            jar.update(cookies)
            data["cookies"] = jar
        if data == self.data:
            return
        await self.set_data(data)

    async def reset(self) -> None:
        self._pending = None
        await self.set_data(empty_session())

    async def refresh(self) -> SessionData:
        """Re-read the persisted copy (written by another context) and rebind to it."""
        if self._refresh_callback is None:
            return self.data
        fresh = normalize_session(await self._refresh_callback())
        self._data = fresh
        return fresh

    def rebind(self, data: Optional[SessionData]) -> None:
        """Adopt externally persisted data without writing it back."""
        self._data = normalize_session(data)

    @asynccontextmanager
    async def staged(self) -> AsyncIterator["ICloudSession"]:
        """
        Buffer mutations and persist them once on clean exit.
        On any error the in-memory and persisted data stay as they were before
        the block began.
        """
        if self._pending is not None:
            raise RuntimeError("staged() blocks do not nest")
        before = copy_session(self._data)
        self._pending = copy_session(self._data)
        try:
            yield self
            committed = self._pending
        finally:
            self._pending = None
        if committed is None:
            # reset() ran inside the block; there is nothing left to commit
            return
        if committed != before:
            try:
                self._data = committed
                await self._persist(copy_session(committed))
            except Exception:
                self._data = before
                raise
