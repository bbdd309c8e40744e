import pytest


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("ATLAS_API_KEY", "nk-test-key")
    monkeypatch.delenv("ATLAS_API_DOMAIN", raising=False)
    monkeypatch.delenv("EMBEDLING_TIMEOUT_SECONDS", raising=False)
    monkeypatch.delenv("EMBEDLING_LOG_LEVEL", raising=False)
