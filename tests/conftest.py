"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from inkwell.ai.orchestration.retry import RetryPolicy


@pytest.fixture
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture
def fast_retry(recorded_sleeps: list[float]) -> RetryPolicy:
    async def _sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    return RetryPolicy(max_retries=3, initial_delay=0.5, sleep=_sleep)


@pytest.fixture(autouse=True)
def _isolated_log_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in ("INKWELL_LOG_LEVEL", "INKWELL_API_KEY", "INKWELL_MODEL", "INKWELL_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INKWELL_LOG_DIR", str(tmp_path / "logs"))
    logging.getLogger("inkwell").setLevel(logging.DEBUG)
