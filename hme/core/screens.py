"""
Per-phase action surfaces.

Each screen is bound to exactly one phase and exposes only that phase's
actions. Provider failures are caught here and turned into inline `error`
text; a lost session (SessionInvalid / NotAuthenticated) is not a local
condition and is escalated to a forced sign-out on the controller.
"""
import dataclasses
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Tuple

from hme.api.schemas import LogInRequest
from hme.core.state_machine import Phase
from hme.icloud.client import CODE_LENGTH_MESSAGE, is_well_formed_code
from hme.icloud.errors import HmeError, NotAuthenticated, SessionInvalid, VerificationRejected
from hme.icloud.premium_mail import HmeEmail, PremiumMailSettings
from hme.observability.logging import log

if TYPE_CHECKING:
    from hme.core.controller import PhaseController

SIGN_IN_FAILED_MESSAGE = "Failed to sign in. Please try again."
TWO_FA_FAILED_MESSAGE = "2FA failed. Please try entering the code again or sign-out and sign back in."


class _Screen:
    phase: Phase

    def __init__(self, controller: "PhaseController"):
        self.controller = controller
        self.error: Optional[str] = None

    @property
    def client(self):
        return self.controller.client

    def _slot(self, name: str) -> str:
        return f"{self.phase.value}:{name}"

    def is_submitting(self, name: str) -> bool:
        return self.controller.is_submitting(self._slot(name))

    def _premium_mail(self) -> PremiumMailSettings:
        return PremiumMailSettings(self.client)

    async def _attempt(self, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, Optional[str]]:
        """(result, None) on success, (None, message) on a provider error."""
        generation = self.controller.generation
        try:
            return await fn(), None
        except (SessionInvalid, NotAuthenticated) as e:
            log(event="screen_session_lost", phase=self.phase.value, errorType=type(e).__name__)
            await self.controller.force_sign_out(type(e).__name__, generation=generation)
            return None, str(e)
        except HmeError as e:
            return None, str(e)


class _SessionScreen(_Screen):
    """Screens reachable only with a session; sign-out is available from all of them."""

    async def sign_out(self) -> Phase:
        return await self.controller.sign_out()


class SignInScreen(_Screen):
    phase = Phase.SIGNED_OUT

    async def submit(self, email: str, password: str) -> bool:
        async with self.controller.in_flight(self._slot("submit")):
            self.error = None
            generation = self.controller.generation
            response = await self.controller.messenger.send(LogInRequest(email=email, password=password))
            if not response.success:
                self.error = SIGN_IN_FAILED_MESSAGE
                return False

            # The background component wrote fresh session data; pick it up first
            await self.client.refresh_session()
            if response.action:
                await self.controller.dispatch(response.action, expected_phase=Phase.SIGNED_OUT, generation=generation)
            if self.controller.phase is Phase.SIGNED_IN and self.client.authenticated:
                # Trusted device: iCloud skipped the second factor
                await self.controller.dispatch(
                    "SUCCESSFUL_VERIFICATION", expected_phase=Phase.SIGNED_IN, generation=generation
                )
            return self.controller.phase is not Phase.SIGNED_OUT


class TwoFactorScreen(_SessionScreen):
    phase = Phase.SIGNED_IN

    async def submit(self, code: str) -> bool:
        async with self.controller.in_flight(self._slot("verify")):
            self.error = None
            code = (code or "").strip()
            if not is_well_formed_code(code):
                self.error = CODE_LENGTH_MESSAGE
                return False

            with self.controller.fenced() as generation:
                try:
                    await self.client.complete_second_factor(code)
                except VerificationRejected:
                    self.error = TWO_FA_FAILED_MESSAGE
                    return False

            await self.controller.dispatch(
                "SUCCESSFUL_VERIFICATION", expected_phase=Phase.SIGNED_IN, generation=generation
            )
            return self.controller.phase is Phase.VERIFIED


class GeneratorScreen(_SessionScreen):
    phase = Phase.VERIFIED

    def __init__(self, controller: "PhaseController", label_hint: str = ""):
        super().__init__(controller)
        self.label_hint = label_hint
        self.hme_email: Optional[str] = None
        self.forward_to: Optional[str] = None
        self.reserved: Optional[HmeEmail] = None
        self.reserve_error: Optional[str] = None

    @property
    def reservation_disabled(self) -> bool:
        if self.is_submitting("generate"):
            return True
        return self.reserved is not None and self.reserved.hme == self.hme_email

    async def load(self) -> None:
        self.error = None
        listing, err = await self._attempt(lambda: self._premium_mail().list_hme())
        if err is not None:
            self.error = err
            return
        self.forward_to = listing.selectedForwardTo
        await self.refresh_email()

    async def refresh_email(self) -> Optional[str]:
        async with self.controller.in_flight(self._slot("generate")):
            self.reserved = None
            self.error = None
            self.reserve_error = None
            hme, err = await self._attempt(lambda: self._premium_mail().generate_hme())
            if err is not None:
                self.error = err
            else:
                self.hme_email = hme
            return self.hme_email

    async def use(self, label: Optional[str] = None, note: Optional[str] = None) -> Optional[HmeEmail]:
        if self.hme_email is None:
            return None
        async with self.controller.in_flight(self._slot("reserve")):
            self.reserved = None
            self.reserve_error = None
            hme = self.hme_email
            reserved, err = await self._attempt(
                lambda: self._premium_mail().reserve_hme(hme, label or self.label_hint, note or None)
            )
            if err is not None:
                self.reserve_error = err
                return None
            self.reserved = reserved
            return reserved

    async def manage(self) -> Phase:
        return await self.controller.dispatch("MANAGE", expected_phase=Phase.VERIFIED)


class ManagerScreen(_SessionScreen):
    phase = Phase.VERIFIED_AND_MANAGING

    def __init__(self, controller: "PhaseController"):
        super().__init__(controller)
        self.emails: List[HmeEmail] = []
        self.loaded = False

    async def load(self) -> List[HmeEmail]:
        async with self.controller.in_flight(self._slot("list")):
            self.error = None
            listing, err = await self._attempt(lambda: self._premium_mail().list_hme())
            if err is not None:
                self.error = err
            else:
                self.emails = listing.newest_first()
            self.loaded = True
            return self.emails

    async def toggle_activation(self, email: HmeEmail) -> bool:
        async with self.controller.in_flight(self._slot(f"activation:{email.anonymousId}")):
            self.error = None
            if email.isActive:
                _, err = await self._attempt(lambda: self._premium_mail().deactivate_hme(email.anonymousId))
            else:
                _, err = await self._attempt(lambda: self._premium_mail().reactivate_hme(email.anonymousId))
            if err is not None:
                self.error = err
                return False
            flipped = dataclasses.replace(email, isActive=not email.isActive)
            self.emails = [flipped if e == email else e for e in self.emails]
            return True

    async def delete(self, email: HmeEmail) -> bool:
        async with self.controller.in_flight(self._slot(f"delete:{email.anonymousId}")):
            self.error = None
            _, err = await self._attempt(lambda: self._premium_mail().delete_hme(email.anonymousId))
            if err is not None:
                self.error = err
                return False
            self.emails = [e for e in self.emails if e != email]
            return True

    async def generate(self) -> Phase:
        return await self.controller.dispatch("GENERATE", expected_phase=Phase.VERIFIED_AND_MANAGING)
