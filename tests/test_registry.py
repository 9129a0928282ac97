"""Tests for devflow.process.registry.Registry."""

from __future__ import annotations

import asyncio

import pytest

from devflow.errors import AlreadySignaledError, NotFoundError
from devflow.process.registry import Handle, Registry


def _handle(instance_id: str) -> Handle:
    return Handle(id=instance_id, cancel=asyncio.get_running_loop().create_future())


class TestLookup:
    async def test_register_list_remove(self) -> None:
        reg: Registry[Handle] = Registry()
        a, b = _handle("a"), _handle("b")
        reg.register(a)
        reg.register(b)
        assert sorted(reg.list()) == ["a", "b"]
        assert len(reg) == 2
        assert "a" in reg
        assert reg.get("a") is a
        assert dict(reg.list_detailed()) == {"a": a, "b": b}

        assert reg.remove("a") is a
        assert reg.remove("a") is None
        assert reg.list() == ["b"]

    async def test_get_unknown(self) -> None:
        reg: Registry[Handle] = Registry("PTY session")
        with pytest.raises(NotFoundError, match="PTY session not found"):
            reg.get("nope")

    async def test_empty(self) -> None:
        reg: Registry[Handle] = Registry()
        assert reg.list() == []
        assert reg.list_detailed() == []
        assert reg.kill_all() == 0


class TestKill:
    async def test_resolves_cancel_future(self) -> None:
        reg: Registry[Handle] = Registry()
        h = _handle("a")
        fut = h.cancel
        reg.register(h)
        reg.kill("a")
        assert fut.done() and fut.result() is None
        # The entry stays until its supervisor removes it.
        assert "a" in reg

    async def test_unknown_id(self) -> None:
        reg: Registry[Handle] = Registry()
        with pytest.raises(NotFoundError, match="Process not found"):
            reg.kill("nope")

    async def test_second_kill(self) -> None:
        reg: Registry[Handle] = Registry()
        reg.register(_handle("a"))
        reg.kill("a")
        with pytest.raises(AlreadySignaledError, match="Kill signal already sent"):
            reg.kill("a")

    async def test_receiver_gone(self) -> None:
        reg: Registry[Handle] = Registry()
        h = _handle("a")
        reg.register(h)
        h.cancel.cancel()  # supervisor finished and stopped listening
        with pytest.raises(AlreadySignaledError, match="already exited"):
            reg.kill("a")

    async def test_after_removal(self) -> None:
        reg: Registry[Handle] = Registry()
        reg.register(_handle("a"))
        reg.remove("a")
        with pytest.raises(NotFoundError):
            reg.kill("a")

    async def test_kill_all(self) -> None:
        reg: Registry[Handle] = Registry()
        handles = [_handle(str(i)) for i in range(3)]
        for h in handles:
            reg.register(h)
        futures = [h.cancel for h in handles]
        reg.kill("0")

        assert reg.kill_all() == 2
        assert all(f.done() for f in futures)
        assert len(reg) == 3
        # Everything has been signalled once already.
        assert reg.kill_all() == 0
