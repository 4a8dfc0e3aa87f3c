from __future__ import annotations

from pystash._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "email": "user@example.com",
        "password": "pw",
        "access_token": "jwt",
        "apikey": "anon",
        "nested": {"gemini_api_key": "AIza-secret", "name": "Eggs"},
        "rows": [{"refresh_token": "r"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["email"] == "user@example.com"
    assert redacted["password"] == "<redacted>"
    assert redacted["access_token"] == "<redacted>"
    assert redacted["apikey"] == "<redacted>"
    assert redacted["nested"] == {"gemini_api_key": "<redacted>", "name": "Eggs"}
    assert redacted["rows"] == [{"refresh_token": "<redacted>"}]


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarizes_bytes() -> None:
    assert redact_for_log(b"\x00\x01") == "<bytes:2b>"
