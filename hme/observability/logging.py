"""
Structured event log: one JSON object per line on stdout.

Redaction (ENABLE_PII_REDACTION) covers what this client handles in clear
text: the account password, the 2FA code and the Apple session material
(session headers, dsWebAuthToken, trust token, whole SessionData dicts).
Values under those keys become "[REDACTED:<n>chars]", at the top level and
one level down inside dict fields.
"""
import json
import time
from hme.settings import settings

SENSITIVE_KEYS = frozenset({
    "password",
    "code",
    "securityCode",
    "headers",
    "cookies",
    "sessionData",
    "dsWebAuthToken",
    "trustToken",
})

def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    return v

def _redact_fields(fields: dict) -> dict:
    clean = {}
    for k, v in fields.items():
        if k in SENSITIVE_KEYS:
            clean[k] = _redact_value(v)
        elif isinstance(v, dict):
            clean[k] = {sk: (_redact_value(sv) if sk in SENSITIVE_KEYS else sv) for sk, sv in v.items()}
        else:
            clean[k] = v
    return clean

def log(event: str, **fields):
    payload = {"ts": int(time.time()), "event": event}
    payload.update(_redact_fields(fields) if settings.ENABLE_PII_REDACTION else fields)
    # Fields are ints, strings and enum values; str() covers the odd exception or URL object
    print(json.dumps(payload, ensure_ascii=False, default=str))
