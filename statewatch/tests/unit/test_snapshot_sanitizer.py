from __future__ import annotations

from statewatch.services.audit import sanitize_snapshot


def test_redacts_secret_keys_recursively() -> None:
    snapshot = {
        "status": "active",
        "password_hash": "x",
        "profile": {"email": "a@example.com", "api_key": "k", "Authorization": "Bearer y"},
        "sessions": [{"refresh_token": "t", "device": "phone"}],
        "credentials_rotated": True,
    }
    sanitized = sanitize_snapshot(snapshot)
    assert sanitized == {
        "status": "active",
        "password_hash": "[REDACTED]",
        "profile": {
            "email": "a@example.com",
            "api_key": "[REDACTED]",
            "Authorization": "[REDACTED]",
        },
        "sessions": [{"refresh_token": "[REDACTED]", "device": "phone"}],
        "credentials_rotated": "[REDACTED]",
    }


def test_does_not_mutate_input() -> None:
    snapshot = {"client_secret": "s"}
    sanitize_snapshot(snapshot)
    assert snapshot == {"client_secret": "s"}


def test_scalars_pass_through() -> None:
    assert sanitize_snapshot("overdue") == "overdue"
    assert sanitize_snapshot(None) is None
