"""PTY manager — supervises interactive sessions from spawn to cleanup."""

from __future__ import annotations

import asyncio
import codecs
import logging
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable

from devflow.agent.builder import Invocation
from devflow.config import PtyConfig
from devflow.errors import SpawnError
from devflow.process.registry import Handle, Registry
from devflow.process.temp import TempContext
from devflow.pty.session import PtySession
from devflow.session.wire import (
    EventSink,
    PtyError,
    PtyExited,
    PtyOutput,
    PtyStarted,
    deliver,
)

logger = logging.getLogger(__name__)


@dataclass
class PtyHandle(Handle):
    """Registry entry for an interactive session."""

    session: PtySession | None = field(default=None, repr=False)
    agent: str = ""


class PtyManager:
    """Manages the lifecycle of interactive agent sessions.

    The manager ensures:
    - Sessions are registered before ``started`` and removed after ``exited``
    - Output chunks are forwarded in order and all of them precede ``exited``
    - Exit is detected by polling, raced against the registry's cancel signal
    - Every child is killed on shutdown (no orphan processes)
    """

    def __init__(
        self, registry: Registry[PtyHandle], config: PtyConfig | None = None
    ) -> None:
        self._registry = registry
        self._config = config or PtyConfig()
        self._tasks: set[asyncio.Task] = set()

    async def spawn(
        self,
        invocation: Invocation,
        on_event: EventSink,
        *,
        cols: int | None = None,
        rows: int | None = None,
        temp: TempContext | None = None,
        instance_id: str | None = None,
    ) -> str:
        """Spawn the command on a new PTY and return the session id.

        Raises:
            SpawnError: the PTY could not be opened or the binary executed.
        """
        instance_id = instance_id or str(uuid.uuid4())
        session = PtySession(
            command=invocation.argv,
            cwd=invocation.cwd,
            env=invocation.env,
            cols=cols or self._config.default_cols,
            rows=rows or self._config.default_rows,
            term=self._config.term,
        )
        try:
            session.start()
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            # ValueError: a NUL byte in argv, env or cwd.
            if temp is not None:
                await temp.cleanup()
            raise SpawnError(
                f"Failed to spawn {invocation.spec.binary} in PTY: {e}"
            ) from e

        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def _on_chunk(data: bytes) -> None:
            text = decoder.decode(data)
            if text:
                loop.call_soon_threadsafe(deliver, on_event, PtyOutput(data=text))

        # Chunks are queued on the loop, so none can be delivered before
        # ``started`` below; nothing here yields.
        try:
            reader = self._start_reader(loop, session, instance_id, _on_chunk)
        except RuntimeError as e:
            session.kill()
            session.reap()
            session.close()
            if temp is not None:
                await temp.cleanup()
            raise SpawnError(f"Failed to start PTY reader: {e}") from e

        cancel: asyncio.Future[None] = loop.create_future()
        handle = PtyHandle(
            id=instance_id, cancel=cancel, session=session, agent=invocation.spec.name
        )
        self._registry.register(handle)
        deliver(on_event, PtyStarted(id=instance_id))

        task = asyncio.create_task(
            self._supervise(session, instance_id, cancel, reader, decoder, on_event, temp)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return instance_id

    def _start_reader(
        self,
        loop: asyncio.AbstractEventLoop,
        session: PtySession,
        instance_id: str,
        on_chunk: Callable[[bytes], None],
    ) -> asyncio.Future[None]:
        """Run ``session.read_blocking`` on a thread of its own.

        Every live session holds its reader thread until EOF, so a shared
        bounded pool would leave later sessions unread.
        """
        done: asyncio.Future[None] = loop.create_future()

        def _finish(error: Exception | None) -> None:
            if done.done():
                return
            if error is None:
                done.set_result(None)
            else:
                done.set_exception(error)

        def _run() -> None:
            error: Exception | None = None
            try:
                session.read_blocking(on_chunk, self._config.read_size)
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(_finish, error)
            except RuntimeError:
                logger.debug("Loop closed before PTY reader %s finished", instance_id)

        threading.Thread(
            target=_run, name=f"devflow-pty-{instance_id[:8]}", daemon=True
        ).start()
        return done

    async def _poll_exit(self, session: PtySession) -> int | None:
        while True:
            code = session.poll()
            if code is not None:
                return code
            await asyncio.sleep(self._config.poll_interval)

    async def _supervise(
        self,
        session: PtySession,
        instance_id: str,
        cancel: asyncio.Future[None],
        reader: asyncio.Future[None],
        decoder: codecs.IncrementalDecoder,
        on_event: EventSink,
        temp: TempContext | None,
    ) -> None:
        exit_code: int | None = None
        poll_task = asyncio.create_task(self._poll_exit(session))
        try:
            await asyncio.wait({poll_task, cancel}, return_when=asyncio.FIRST_COMPLETED)
            # An accepted kill wins even when the child exited in the same tick.
            if cancel.done():
                # Don't wait for the poller to notice.
                session.kill()
                logger.info("PTY session %s killed", instance_id)
            else:
                code = poll_task.result()
                exit_code = code if code is not None and code >= 0 else None
                logger.info("PTY session %s exited (code=%s)", instance_id, code)
        except asyncio.CancelledError:
            session.kill()
            raise
        except Exception as e:
            logger.exception("PTY supervisor for %s failed", instance_id)
            deliver(on_event, PtyError(id=instance_id, message=str(e)))
            session.kill()
        finally:
            if not cancel.done():
                cancel.cancel()
            if not poll_task.done():
                poll_task.cancel()
            await self._drain(session, instance_id, reader)
            tail = decoder.decode(b"", final=True)
            if tail:
                deliver(on_event, PtyOutput(data=tail))
            await asyncio.to_thread(session.reap)
            session.close()
            if temp is not None:
                await temp.cleanup()
            deliver(on_event, PtyExited(id=instance_id, exit_code=exit_code))
            self._registry.remove(instance_id)

    async def _drain(
        self, session: PtySession, instance_id: str, reader: asyncio.Future[None]
    ) -> None:
        """Let the reader hit EOF; stop it if output lingers past the timeout."""
        done, _ = await asyncio.wait({reader}, timeout=self._config.drain_timeout)
        if not done:
            logger.debug("PTY reader %s still open after exit, stopping it", instance_id)
            session.stop_reading()
        try:
            await reader
        except Exception as e:
            logger.debug("PTY reader %s ended: %s", instance_id, e)

    async def write(self, instance_id: str, data: bytes | str) -> None:
        """Append bytes to the session's input stream.

        Raises:
            NotFoundError: the session is unknown or has ended.
        """
        handle = self._registry.get(instance_id)
        if isinstance(data, str):
            data = data.encode("utf-8")
        await asyncio.to_thread(handle.session.write, data)

    def resize(self, instance_id: str, cols: int, rows: int) -> None:
        """Change the live terminal size.

        Raises:
            NotFoundError: the session is unknown or has ended.
        """
        handle = self._registry.get(instance_id)
        handle.session.resize(cols, rows)
        logger.debug("PTY session %s resized to %dx%d", instance_id, cols, rows)

    def kill(self, instance_id: str) -> None:
        self._registry.kill(instance_id)

    async def join(self, timeout: float | None = None) -> None:
        """Wait for every session to reach its terminal event."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cleanup(self, timeout: float | None = None) -> None:
        """Kill all sessions and wait up to ``timeout`` for them. Called on shutdown."""
        self._registry.kill_all()
        await self.join(timeout)
        if self._tasks:
            logger.warning("%d PTY session(s) still closing after shutdown", len(self._tasks))
        else:
            logger.info("All PTY sessions cleaned up")

    def __len__(self) -> int:
        return len(self._tasks)
