"""Shared test fixtures: settings pointed at the fake engine, engines, event capture."""

from __future__ import annotations

import asyncio
import dataclasses
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sqlblocks.config import EngineSettings, OutputSettings, Settings
from sqlblocks.engine import Engine
from sqlblocks.events import LIFECYCLE_EVENTS
from sqlblocks.models import Status
from sqlblocks.render import InlineSink

FAKE_ENGINE = str(Path(__file__).parent / "_fake_engine.py")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SQLBLOCKS_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("SQLBLOCKS_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        engine=EngineSettings(
            executable=sys.executable,
            args=("-u", FAKE_ENGINE),
            startup_timeout=5.0,
            shutdown_grace=0.5,
        ),
        output=OutputSettings(sync_timeout=10.0, temp_dir=tmp_path / "tmp"),
    )


def with_engine(settings: Settings, **changes: Any) -> Settings:
    """Copy of *settings* with EngineSettings fields replaced."""
    return dataclasses.replace(settings, engine=dataclasses.replace(settings.engine, **changes))


@pytest.fixture()
async def engine(settings: Settings):
    eng = Engine(settings, sink=InlineSink())
    try:
        yield eng
    finally:
        await eng.close()


@pytest.fixture()
def events(engine: Engine) -> list[dict[str, Any]]:
    """Every lifecycle event the engine emits, in order."""
    captured: list[dict[str, Any]] = []
    for event_type in LIFECYCLE_EVENTS:
        engine.notifier.on(event_type, captured.append)
    return captured


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll *predicate* on the running loop until it holds or *timeout* passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def wait_for_status(engine: Engine, exec_id: str, status: Status) -> None:
    await wait_until(lambda: engine.status(exec_id) == status)
