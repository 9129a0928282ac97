"""Shared fixtures: event recorders, test config and fake agent binaries."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable

import pytest

from devflow.config import DevflowConfig, PtyConfig
from devflow.session.wire import Completed, PtyExited, PtyStarted, Started, is_terminal


class EventRecorder:
    """Event sink that keeps every event and lets tests await the terminal one."""

    def __init__(self) -> None:
        self.events: list = []
        self._done = asyncio.Event()

    def __call__(self, event) -> None:
        self.events.append(event)
        if is_terminal(event):
            self._done.set()

    async def wait(self, timeout: float = 10.0) -> None:
        await asyncio.wait_for(self._done.wait(), timeout=timeout)

    async def wait_for_text(self, needle: str, attr: str = "data", timeout: float = 10.0) -> None:
        """Wait until the concatenated output contains ``needle``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while needle not in self.text(attr):
            if loop.time() > deadline:
                raise AssertionError(f"{needle!r} not seen in {self.text(attr)!r}")
            await asyncio.sleep(0.02)

    def of(self, cls: type) -> list:
        return [e for e in self.events if isinstance(e, cls)]

    @property
    def terminal(self):
        return self.events[-1]

    def text(self, attr: str = "data") -> str:
        return "".join(getattr(e, attr) for e in self.events if hasattr(e, attr))

    def assert_well_ordered(self) -> None:
        assert self.events, "no events recorded"
        assert isinstance(self.events[0], (Started, PtyStarted))
        assert is_terminal(self.events[-1])
        assert sum(1 for e in self.events if isinstance(e, (Completed, PtyExited))) == 1


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def config(tmp_path: Path) -> DevflowConfig:
    return DevflowConfig(
        home=str(tmp_path / "home"),
        pty=PtyConfig(poll_interval=0.02, drain_timeout=1.0),
    )


@pytest.fixture
def fake_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], Path]:
    """Create shell-script stand-ins for agent CLIs, first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return path

    return make


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    d = tmp_path / "project"
    d.mkdir()
    return d
