from __future__ import annotations

import pytest
from pydantic import ValidationError

from config.settings import Settings


def test_settings_load_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("LOCAL_ID", "  bob ")
    monkeypatch.setenv("RELAY_URL", "wss://relay.example.org")
    monkeypatch.setenv("ICE_SERVERS", '["stun:stun.example.org:3478"]')
    monkeypatch.setenv("RINGING_TIMEOUT", "30")

    settings = Settings(_env_file=None)

    assert settings.local_id == "bob"
    assert settings.relay_url == "wss://relay.example.org"
    assert settings.ice_servers == ["stun:stun.example.org:3478"]
    assert settings.ringing_timeout == 30.0
    assert settings.auto_answer is False


def test_defaults_use_public_stun_servers(monkeypatch) -> None:
    monkeypatch.delenv("ICE_SERVERS", raising=False)

    settings = Settings(_env_file=None)

    assert all(url.startswith("stun:") for url in settings.ice_servers)
    assert settings.early_candidate_limit == 64


@pytest.mark.parametrize(
    "overrides",
    [
        {"local_id": "   "},
        {"ringing_timeout": 0},
        {"early_candidate_limit": -1},
    ],
)
def test_invalid_values_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)
