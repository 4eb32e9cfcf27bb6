"""
SessionStore: the two persisted keys (phase, session data) + change feed.

Each value is wrapped in an envelope:
    {"value": <payload>, "writtenAt": <epoch ms>, "writer": <surface id>}

Reconciliation between surfaces is last-writer-wins: there is no locking
across processes, a later write simply replaces an earlier one and the change
feed tells every other surface to re-read.
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from hme.core.state_machine import INITIAL_PHASE, Phase, parse_phase
from hme.icloud.session import SessionData, empty_session, normalize_session
from hme.observability.logging import log
from hme.settings import settings
from hme.store.storage import KeyValueStorage
from hme.utils.time import now_ms

PHASE = "phase"
SESSION = "session"


@dataclass(frozen=True)
class StoreChange:
    key: str  # PHASE or SESSION
    writer: str
    writtenAt: int


def _unwrap(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Envelope from a stored string. Bare legacy values are wrapped on the fly."""
    if raw is None:
        return None
    data = json.loads(raw)
    if isinstance(data, dict) and "value" in data and "writtenAt" in data:
        return data
    return {"value": data, "writtenAt": 0, "writer": ""}


class SessionStore:
    def __init__(self, storage: KeyValueStorage, surface_id: Optional[str] = None):
        self.storage = storage
        self.surface_id = surface_id or settings.SURFACE_ID
        self._keys = {
            PHASE: f"{settings.STORAGE_KEY_PREFIX}{settings.PHASE_STORAGE_KEY}",
            SESSION: f"{settings.STORAGE_KEY_PREFIX}{settings.SESSION_STORAGE_KEY}",
        }
        self._names = {v: k for k, v in self._keys.items()}

    def storage_key(self, name: str) -> str:
        return self._keys[name]

    async def _read(self, name: str) -> Optional[Dict[str, Any]]:
        raw = await self.storage.get(self._keys[name])
        try:
            return _unwrap(raw)
        except ValueError:
            # Corrupt value: treat as absent, the next write replaces it
            log(event="store_value_corrupt", key=name, size=len(raw or ""))
            return None

    async def _write(self, name: str, value: Any) -> None:
        envelope = {"value": value, "writtenAt": now_ms(), "writer": self.surface_id}
        await self.storage.set(self._keys[name], json.dumps(envelope), self.surface_id)
        log(event="store_write", key=name, writer=self.surface_id, writtenAt=envelope["writtenAt"])

    async def get_phase(self) -> Phase:
        envelope = await self._read(PHASE)
        if envelope is None:
            return INITIAL_PHASE
        return parse_phase(envelope.get("value"))

    async def set_phase(self, phase: Phase) -> None:
        await self._write(PHASE, Phase(phase).value)

    async def get_session_data(self) -> SessionData:
        envelope = await self._read(SESSION)
        if envelope is None:
            return empty_session()
        return normalize_session(envelope.get("value"))

    async def set_session_data(self, data: SessionData) -> None:
        await self._write(SESSION, normalize_session(data))

    async def clear(self) -> None:
        """Sign-out reset: session data first, then phase. Never one without the other."""
        await self.set_session_data(empty_session())
        await self.set_phase(INITIAL_PHASE)

    async def metadata(self, name: str) -> Dict[str, Any]:
        envelope = await self._read(name) or {}
        return {"writtenAt": int(envelope.get("writtenAt") or 0), "writer": envelope.get("writer") or ""}

    async def changes(self) -> AsyncIterator[StoreChange]:
        """Writes to our two keys made by other surfaces."""
        async for event in self.storage.watch():
            name = self._names.get(event.key)
            if name is None or event.writer == self.surface_id:
                continue
            yield StoreChange(key=name, writer=event.writer, writtenAt=event.writtenAt)
