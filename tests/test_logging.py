from bureauguard.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credentials_and_accounts():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "account": "alice@example.com",
            "password": "hunter2-long",
            "token_type": "session",
            "origin": "203.0.113.9",
        },
    )

    assert event["account"] == "al***om"
    assert event["password"] == "hu***ng"
    assert event["token_type"] == "session"
    assert event["origin"] == "203.0.113.9"


def test_short_values_left_alone():
    assert _redact_pii(None, "info", {"token": "abc"})["token"] == "abc"


def test_sanitize_strips_sql_and_paths():
    message = sanitize_error_message(
        "failed: SELECT jti FROM jwt_jti at /srv/bureauguard/jwt_jti.csv"
    )
    assert "SELECT" not in message
    assert "/srv/" not in message
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-42")
    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert set_correlation_id()
