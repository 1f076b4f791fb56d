"""Shared fixtures for kiwi_tcms_mcp tests.

Bridge and supervisor tests run tests/fake_worker.py as a real
subprocess in place of the Node.js MCP worker.
"""

import asyncio
import sys
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from kiwi_tcms_mcp.bridge import WorkerBridge, create_bridge
from kiwi_tcms_mcp.config import Settings

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Build settings that run the fake worker with short timings."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "kiwi_base_url": "http://kiwi.test:8080",
            "kiwi_token": "test-token-123",
            "log_level": "DEBUG",
            "worker_command": [sys.executable, "-u", str(FAKE_WORKER)],
            "worker_cwd": None,
            "request_timeout_seconds": 5.0,
            "ready_mode": "probe",
            "ready_timeout_seconds": 5.0,
            "warmup_seconds": 0.0,
            "restart_delay_seconds": 0.1,
            "restart_backoff": "fixed",
            "restart_max_delay_seconds": 1.0,
            "stop_timeout_seconds": 2.0,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    """Default test settings."""
    return settings_factory()


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll a condition from async tests."""

    async def _wait_until(
        predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02
    ) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait_until


@pytest.fixture
async def bridge(
    settings: Settings, wait_until: Callable[..., Any]
) -> AsyncIterator[WorkerBridge]:
    """Started bridge with a ready fake worker."""
    bridge = create_bridge(settings)
    await bridge.start()
    await wait_until(lambda: bridge.is_ready)
    yield bridge
    await bridge.stop()
