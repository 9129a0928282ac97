"""Process supervisor — one piped agent child from spawn to cleanup.

States: spawning -> running -> draining -> terminated.

* spawning: the child is started with piped stdout/stderr in its own
  process group. A failure raises ``SpawnError`` before anything is
  registered or emitted.
* running: two line readers forward output while the supervising task races
  the child's natural exit against the registry's cancel signal.
* draining: both readers must hit EOF, then staged files are cleaned up,
  ``Completed`` is emitted and the registry entry is removed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from dataclasses import dataclass
from typing import Callable

from devflow.agent.builder import Invocation
from devflow.config import ProcessConfig
from devflow.errors import SpawnError
from devflow.process.registry import Handle, Registry
from devflow.process.temp import TempContext
from devflow.session.wire import (
    Completed,
    EventSink,
    ProcessError,
    Started,
    StderrLine,
    StdoutLine,
    deliver,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessHandle(Handle):
    """Registry entry for a piped agent process."""

    linkage_id: str | None = None
    session_id: str | None = None
    agent: str = ""
    pid: int | None = None


class ProcessSupervisor:
    """Spawns piped agent processes and supervises them to completion."""

    def __init__(
        self,
        registry: Registry[ProcessHandle],
        config: ProcessConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ProcessConfig()
        self._tasks: set[asyncio.Task] = set()

    async def spawn(
        self,
        invocation: Invocation,
        on_event: EventSink,
        *,
        temp: TempContext | None = None,
        instance_id: str | None = None,
        linkage_id: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """Start the agent and return its instance id.

        ``temp`` becomes owned by this invocation: it is cleaned up after
        the run, or immediately if the spawn fails.

        Raises:
            SpawnError: the binary is missing or could not be executed.
        """
        instance_id = instance_id or str(uuid.uuid4())
        env = {**os.environ, **invocation.env}

        try:
            proc = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=invocation.cwd,
                env=env,
                start_new_session=True,  # own process group for tree-killing
                limit=self._config.line_limit,
            )
        except (OSError, ValueError) as e:
            # ValueError: a NUL byte in argv, env or cwd.
            if temp is not None:
                await temp.cleanup()
            raise SpawnError(f"Failed to spawn agent: {e}") from e

        cancel: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        handle = ProcessHandle(
            id=instance_id,
            cancel=cancel,
            linkage_id=linkage_id,
            session_id=session_id,
            agent=invocation.spec.name,
            pid=proc.pid,
        )
        self._registry.register(handle)
        logger.info(
            "Agent process %s started: pid=%d agent=%s",
            instance_id,
            proc.pid,
            invocation.spec.name,
        )
        deliver(on_event, Started(process_id=instance_id, session_id=session_id))

        readers = [
            asyncio.create_task(
                _read_lines(proc.stdout, StdoutLine, on_event, instance_id)
            ),
            asyncio.create_task(
                _read_lines(proc.stderr, StderrLine, on_event, instance_id)
            ),
        ]
        task = asyncio.create_task(
            self._supervise(proc, instance_id, cancel, readers, on_event, temp)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return instance_id

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        instance_id: str,
        cancel: asyncio.Future[None],
        readers: list[asyncio.Task],
        on_event: EventSink,
        temp: TempContext | None,
    ) -> None:
        exit_code: int | None = None
        wait_task = asyncio.ensure_future(proc.wait())
        try:
            await asyncio.wait({wait_task, cancel}, return_when=asyncio.FIRST_COMPLETED)
            # An accepted kill wins even when the child exited in the same tick.
            if cancel.done():
                _kill_group(proc)
                await wait_task
                logger.info("Agent process %s killed", instance_id)
            else:
                code = wait_task.result()
                # Death by signal has no exit code.
                exit_code = code if code >= 0 else None
                logger.info("Agent process %s exited (code=%s)", instance_id, code)
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        except Exception as e:
            logger.exception("Supervisor for %s failed", instance_id)
            deliver(on_event, ProcessError(process_id=instance_id, message=str(e)))
            _kill_group(proc)
        finally:
            if not cancel.done():
                # Later kill() calls see a dropped receiver.
                cancel.cancel()
            if not wait_task.done():
                wait_task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            if temp is not None:
                await temp.cleanup()
            deliver(on_event, Completed(process_id=instance_id, exit_code=exit_code))
            self._registry.remove(instance_id)

    async def join(self, timeout: float | None = None) -> None:
        """Wait for every supervised process to reach its terminal event."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    def __len__(self) -> int:
        return len(self._tasks)


async def _read_lines(
    stream: asyncio.StreamReader | None,
    event_cls: Callable[..., StdoutLine | StderrLine],
    on_event: EventSink,
    instance_id: str,
) -> None:
    """Forward one event per line until EOF or a read error.

    A line longer than the stream limit is dropped whole: everything up to
    its newline is discarded and reading resumes with the next line.
    """
    if stream is None:
        return
    discarding = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # EOF; a last line without a newline is still a line.
            raw = e.partial
            if not raw or discarding:
                break
        except asyncio.LimitOverrunError as e:
            if not discarding:
                logger.warning("Dropping oversized line from %s", instance_id)
                discarding = True
            await stream.read(e.consumed)
            continue
        except OSError as e:
            logger.debug("Reader for %s ended: %s", instance_id, e)
            break
        if discarding:
            # Tail of the oversized line.
            discarding = False
            continue
        if raw.endswith(b"\n"):
            raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        deliver(on_event, event_cls(line=raw.decode("utf-8", errors="replace")))


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's whole process group."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process group already gone: %d", proc.pid)
    except OSError as e:
        logger.warning("killpg failed for %d (%s), killing pid only", proc.pid, e)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
