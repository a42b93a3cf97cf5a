import pytest
from pydantic import ValidationError

from chat_gateway.settings import Settings


def _settings(monkeypatch, **env) -> Settings:
    monkeypatch.setenv("ENDPOINTS_CONFIG", "endpoints.yaml")
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return Settings(_env_file=None)


def test_cors_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    assert _settings(monkeypatch).cors_allow_origins == ["*"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("*", ["*"]),
        ("https://a.example, https://b.example", ["https://a.example", "https://b.example"]),
        ('["https://a.example"]', ["https://a.example"]),
    ],
)
def test_cors_origins_from_env(monkeypatch, raw, expected):
    settings = _settings(monkeypatch, CORS_ALLOW_ORIGINS=raw)
    assert settings.cors_allow_origins == expected


def test_log_level_is_normalised(monkeypatch):
    assert _settings(monkeypatch, LOG_LEVEL="debug").log_level == "DEBUG"


def test_unknown_log_level_rejected(monkeypatch):
    with pytest.raises(ValidationError):
        _settings(monkeypatch, LOG_LEVEL="chatty")


def test_empty_endpoints_config_rejected(monkeypatch):
    with pytest.raises(ValidationError):
        _settings(monkeypatch, ENDPOINTS_CONFIG=" ")
