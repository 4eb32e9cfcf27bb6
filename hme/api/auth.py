import secrets

from fastapi import Header, HTTPException, Request

from hme.observability.logging import log
from hme.settings import settings


def require_api_key(request: Request, x_api_key: str = Header(default="", alias="x-api-key")):
    """
    Guards the sign-in component, which accepts raw Apple credentials.
    No API_KEY configured: open (single-user, localhost setups).
    API_KEY configured: the x-api-key header must match, compared in constant time.
    """
    expected = settings.API_KEY
    if not expected:
        return
    if not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        log(event="api_key_rejected", path=request.url.path, keyPresent=bool(x_api_key))
        raise HTTPException(status_code=401, detail="Invalid API key")
