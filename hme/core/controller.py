"""
PhaseController
---------------
Owns the active phase for one surface and is the only writer of phase and
session data for that surface.

Ordering rules:
  - Every phase/session write goes through one asyncio.Lock.
  - Session data is made durable before the phase that depends on it
    (Verified is never persisted ahead of the authenticated session).
  - Sign-out clears session data and phase together, session first.
  - Each reset bumps a generation counter. A causal chain (sign-in,
    verify -> trust -> login, revalidation) records the generation it started
    in; if a reset happened meanwhile, its late writes are dropped instead of
    clobbering the fresher state.
"""
import asyncio
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Iterator, Optional, Set, Union, assert_never

import httpx

from hme.core.state_machine import INITIAL_PHASE, VERIFIED_PHASES, Action, Phase, is_legal, next_phase
from hme.icloud.client import ICloudClient
from hme.icloud.errors import ActionInFlight, IllegalTransition, NotAuthenticated, SessionInvalid
from hme.icloud.session import ICloudSession, SessionData
from hme.observability.logging import log
from hme.settings import settings
from hme.store.session_store import PHASE, SESSION, SessionStore, StoreChange
from hme.core.screens import GeneratorScreen, ManagerScreen, SignInScreen, TwoFactorScreen

Screen = Union[SignInScreen, TwoFactorScreen, GeneratorScreen, ManagerScreen]

# Generation a running chain started in; None outside of fenced chains
_chain_generation: ContextVar[Optional[int]] = ContextVar("hme_chain_generation", default=None)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log(event="background_task_failed", task=task.get_name(), errorType=type(exc).__name__, error=str(exc)[:300])


class PhaseController:
    def __init__(self, store: SessionStore, messenger=None, http: Optional[httpx.AsyncClient] = None):
        if messenger is None:
            from hme.api.messenger import HttpSignInMessenger
            messenger = HttpSignInMessenger()
        self.store = store
        self.messenger = messenger
        self.phase: Phase = INITIAL_PHASE
        self.session = ICloudSession(None, self._persist_session, self._read_session)
        self.client = ICloudClient(self.session, http=http)

        self._lock = asyncio.Lock()
        self._generation = 0
        self._in_flight: Set[str] = set()
        self._screen: Optional[Screen] = None
        self._watcher: Optional[asyncio.Task] = None
        self._revalidation: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Session persistence hooks (bound into ICloudSession)
    # ------------------------------------------------------------------
    async def _persist_session(self, data: SessionData) -> None:
        chain = _chain_generation.get()
        if chain is not None and chain != self._generation:
            log(event="session_write_fenced", chainGeneration=chain, generation=self._generation)
            # Keep the in-memory copy in line with what storage actually holds
            self.session.rebind(await self.store.get_session_data())
            return
        await self.store.set_session_data(data)

    async def _read_session(self) -> SessionData:
        return await self.store.get_session_data()

    @property
    def generation(self) -> int:
        return self._generation

    @contextmanager
    def fenced(self, generation: Optional[int] = None) -> Iterator[int]:
        """Tag session writes made inside the block with the generation the chain started in."""
        gen = self._generation if generation is None else generation
        token = _chain_generation.set(gen)
        try:
            yield gen
        finally:
            _chain_generation.reset(token)

    # ------------------------------------------------------------------
    # Per-action in-flight flags
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def in_flight(self, slot: str) -> AsyncIterator[None]:
        if slot in self._in_flight:
            raise ActionInFlight(slot)
        self._in_flight.add(slot)
        try:
            yield
        finally:
            self._in_flight.discard(slot)

    def is_submitting(self, slot: str) -> bool:
        return slot in self._in_flight

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def activate(self, *, background: bool = False) -> Phase:
        """Load persisted phase + session, then revalidate against iCloud."""
        self.phase = await self.store.get_phase()
        self.session.rebind(await self.store.get_session_data())
        log(
            event="controller_activated",
            surface=self.store.surface_id,
            phase=self.phase.value,
            sessionPresent=self.session.present,
            authenticated=self.client.authenticated,
        )
        if background:
            self._revalidation = self._background(self.revalidate(), "revalidation")
        else:
            await self.revalidate()
        return self.phase

    async def start(self) -> Phase:
        phase = await self.activate(background=True)
        self._watcher = self._background(self.watch(), "watcher")
        return phase

    def _background(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"hme-{name}")
        task.add_done_callback(_log_task_failure)
        return task

    async def stop(self) -> None:
        for task in (self._watcher, self._revalidation):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._watcher = None
        self._revalidation = None
        await self.client.aclose()

    async def revalidate(self) -> Phase:
        """
        Reconcile the persisted phase with what iCloud actually accepts.
        Only ever moves the phase to SignedOut (session gone/invalid) or from
        SignedIn to Verified (session already fully authenticated).
        """
        generation = self._generation
        phase = self.phase

        if not self.session.present:
            if phase is not Phase.SIGNED_OUT:
                await self.force_sign_out("session_missing", generation=generation)
            return self.phase

        if not self.client.authenticated:
            if phase in VERIFIED_PHASES:
                await self.force_sign_out("session_unauthenticated", generation=generation)
            return self.phase

        try:
            await self.client.validate_token()
        except SessionInvalid as e:
            log(event="revalidation_failed", phase=phase.value, error=str(e)[:200])
            await self.force_sign_out("session_invalid", generation=generation)
            return self.phase

        log(event="revalidation_ok", phase=self.phase.value)
        if self.phase is Phase.SIGNED_IN:
            await self.dispatch("SUCCESSFUL_VERIFICATION", expected_phase=Phase.SIGNED_IN, generation=generation)
        return self.phase

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def dispatch(
        self,
        action: Action,
        *,
        expected_phase: Optional[Phase] = None,
        generation: Optional[int] = None,
    ) -> Phase:
        """
        Apply a transition and persist the new phase.
        expected_phase/generation fence results of chains that started earlier:
        if the world moved on in the meantime the result is dropped.
        """
        async with self._lock:
            stale = (generation is not None and generation != self._generation) or (
                expected_phase is not None and expected_phase is not self.phase
            )
            if stale:
                log(
                    event="transition_dropped_stale",
                    action=action,
                    phase=self.phase.value,
                    expectedPhase=getattr(expected_phase, "value", None),
                    chainGeneration=generation,
                    generation=self._generation,
                )
                # Whatever the chain wrote in memory was fenced off; re-sync from storage
                self.session.rebind(await self.store.get_session_data())
                return self.phase

            if not is_legal(self.phase, action):
                raise IllegalTransition(self.phase, action)

            if action == "SUCCESSFUL_SIGN_OUT":
                await self._reset_locked(reason="user_sign_out")
                return self.phase

            if action == "SUCCESSFUL_VERIFICATION" and not self.client.authenticated:
                raise NotAuthenticated("Verified requires an authenticated session")

            previous = self.phase
            nxt = next_phase(self.phase, action)
            await self.store.set_phase(nxt)
            self.phase = nxt
            log(event="phase_transition", fromPhase=previous.value, action=action, toPhase=nxt.value)
            return nxt

    async def sign_out(self) -> Phase:
        """User-initiated sign-out. Reachable from every phase except SignedOut."""
        if self.phase is Phase.SIGNED_OUT:
            raise IllegalTransition(self.phase, "SUCCESSFUL_SIGN_OUT")
        async with self.in_flight("sign_out"):
            return await self.dispatch("SUCCESSFUL_SIGN_OUT")

    async def force_sign_out(self, reason: str, *, generation: Optional[int] = None) -> Phase:
        """Reset to SignedOut regardless of the current phase (session invalid/missing)."""
        async with self._lock:
            if generation is not None and generation != self._generation:
                log(event="forced_sign_out_skipped_stale", reason=reason, chainGeneration=generation)
                return self.phase
            log(event="forced_sign_out", reason=reason, fromPhase=self.phase.value)
            await self._reset_locked(reason=reason)
            return self.phase

    async def _reset_locked(self, reason: str) -> None:
        self._generation += 1
        previous = self.phase
        # The reset itself belongs to the new generation, even when it is
        # triggered from inside an older chain
        with self.fenced(self._generation):
            await self.client.log_out()
        await self.store.set_phase(INITIAL_PHASE)
        self.phase = INITIAL_PHASE
        log(event="phase_reset", reason=reason, fromPhase=previous.value, generation=self._generation)

    # ------------------------------------------------------------------
    # Cross-surface changes
    # ------------------------------------------------------------------
    async def handle_external_change(self, change: StoreChange) -> None:
        log(event="external_change", key=change.key, writer=change.writer, writtenAt=change.writtenAt)
        if change.key == SESSION:
            async with self._lock:
                await self.client.refresh_session()
            await self.revalidate()
        elif change.key == PHASE:
            async with self._lock:
                self.phase = await self.store.get_phase()

    async def watch(self) -> None:
        async for change in self.store.changes():
            try:
                await self.handle_external_change(change)
            except Exception as e:
                # One bad change (storage hiccup, provider error) must not end the feed
                log(event="external_change_failed", key=change.key, errorType=type(e).__name__, error=str(e)[:200])

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------
    def screen(self) -> Screen:
        """Action surface for the current phase; rebuilt whenever the phase changes."""
        if self._screen is not None and self._screen.phase is self.phase:
            return self._screen
        phase = self.phase
        if phase is Phase.SIGNED_OUT:
            screen: Screen = SignInScreen(self)
        elif phase is Phase.SIGNED_IN:
            screen = TwoFactorScreen(self)
        elif phase is Phase.VERIFIED:
            screen = GeneratorScreen(self)
        elif phase is Phase.VERIFIED_AND_MANAGING:
            screen = ManagerScreen(self)
        else:
            assert_never(phase)
        self._screen = screen
        return screen


def build_controller(messenger=None, http: Optional[httpx.AsyncClient] = None) -> PhaseController:
    from hme.store.storage import build_storage

    return PhaseController(SessionStore(build_storage(), settings.SURFACE_ID), messenger=messenger, http=http)
