import json
from unittest.mock import patch

from hme.observability.logging import log
from hme.settings import settings


def test_sensitive_fields_are_redacted(capsys):
    with patch.object(settings, "ENABLE_PII_REDACTION", True):
        log(
            "signin_attempt",
            password="hunter2",
            headers={"scnt": "abc", "X-Apple-Session-Token": "tok"},
            request={"accountName": "user@example.com", "code": "123456"},
            statusCode=409,
        )

    payload = json.loads(capsys.readouterr().out)
    assert payload["event"] == "signin_attempt"
    assert payload["password"] == "[REDACTED:7chars]"
    assert payload["headers"] == {"scnt": "[REDACTED:3chars]", "X-Apple-Session-Token": "[REDACTED:3chars]"}
    assert payload["request"]["code"] == "[REDACTED:6chars]"
    assert payload["request"]["accountName"] == "user@example.com"
    assert payload["statusCode"] == 409


def test_redaction_can_be_disabled(capsys):
    with patch.object(settings, "ENABLE_PII_REDACTION", False):
        log("debug_event", password="hunter2")

    assert json.loads(capsys.readouterr().out)["password"] == "hunter2"


def test_cookies_and_nested_session_material_are_redacted(capsys):
    with patch.object(settings, "ENABLE_PII_REDACTION", True):
        log("session_written", cookies={"aasp": "abc"}, body={"trustToken": "t-1", "status": "ok"})

    payload = json.loads(capsys.readouterr().out)
    assert payload["cookies"] == {"aasp": "[REDACTED:3chars]"}
    assert payload["body"] == {"trustToken": "[REDACTED:3chars]", "status": "ok"}
