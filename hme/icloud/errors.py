class HmeError(Exception):
    pass

class TransientNetworkError(HmeError):
    """Transport failure or timeout. Retryable by re-submitting; never retried silently."""

class AuthenticationRejected(HmeError):
    """Credentials refused or session expired at sign-in."""

class VerificationRejected(HmeError):
    """Second-factor code rejected (client-side length check or by the provider)."""

class SessionInvalid(HmeError):
    """The provider no longer accepts the persisted session."""

class NotAuthenticated(HmeError):
    """An authenticated-only call was attempted without an authenticated session."""

class PremiumMailError(HmeError):
    """Provider answered a Hide My Email call with success=false."""

    def __init__(self, message: str, error_code: str = ""):
        super().__init__(message)
        self.error_code = error_code

class IllegalTransition(HmeError):
    def __init__(self, phase, action):
        super().__init__(f"Action {action!r} is not legal in phase {getattr(phase, 'value', phase)!r}")
        self.phase = phase
        self.action = action

class ActionInFlight(HmeError):
    def __init__(self, slot: str):
        super().__init__(f"Action {slot!r} is already being submitted")
        self.slot = slot
