from typing import Literal, Optional
from pydantic import BaseModel, Field

from hme.core.state_machine import SignedOutAction

class LogInRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)

class LogInResponse(BaseModel):
    success: bool
    # Next action for the requesting surface to apply; None on failure
    action: Optional[SignedOutAction] = None

class SessionStatus(BaseModel):
    phase: str
    sessionPresent: bool
    authenticated: bool
    sessionWrittenAt: int = 0
    sessionWriter: str = ""
    phaseWrittenAt: int = 0
    phaseWriter: str = ""

class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
