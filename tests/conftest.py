from collections.abc import Callable, Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from aicore.config.settings import clear_settings_cache
from aicore.main import create_app
from aicore.metrics import reset_metrics


def _build_app(monkeypatch: pytest.MonkeyPatch, extra_env: dict[str, str] | None = None) -> FastAPI:
    monkeypatch.setenv("AIC_API_KEYS", "test-key")
    monkeypatch.setenv("AIC_ADMIN_API_KEYS", "admin-key")
    monkeypatch.setenv("AIC_WORKER_COUNT", "2")
    monkeypatch.setenv("AIC_BACKOFF_BASE_S", "0.01")
    monkeypatch.setenv("AIC_BACKOFF_MAX_S", "0.05")
    monkeypatch.setenv("AIC_VECTOR_DIM", "32")
    monkeypatch.setenv("AIC_VECTOR_FLUSH_INTERVAL_S", "0.01")
    for key, value in (extra_env or {}).items():
        monkeypatch.setenv(key, value)
    clear_settings_cache()
    return create_app()


def _build_client(
    monkeypatch: pytest.MonkeyPatch, extra_env: dict[str, str] | None = None
) -> TestClient:
    return TestClient(_build_app(monkeypatch, extra_env))


@pytest.fixture(autouse=True)
def _fresh_metrics() -> Iterator[None]:
    reset_metrics()
    yield
    clear_settings_cache()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    with _build_client(monkeypatch) as test_client:
        yield test_client


@pytest.fixture
def idle_app(monkeypatch: pytest.MonkeyPatch) -> FastAPI:
    """App whose lifespan never runs: submitted requests stay queued."""
    return _build_app(monkeypatch)


@pytest.fixture
def client_with_env(
    monkeypatch: pytest.MonkeyPatch,
) -> Callable[[dict[str, str]], TestClient]:
    """Returns a factory; use the client as a context manager so workers run."""

    def factory(extra_env: dict[str, str]) -> TestClient:
        return _build_client(monkeypatch, extra_env)

    return factory


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-aic-tenant-id": "tenant-a",
        "x-aic-user-id": "user-1",
    }


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": "Bearer admin-key"}
