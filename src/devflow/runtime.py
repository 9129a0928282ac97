"""The control surface the desktop front end talks to.

One runtime owns one process registry and one PTY registry and passes them
into the supervisors that use them. Create it at application start and call
``shutdown()`` (or use ``async with``) at exit so no agent outlives the app.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from devflow.agent.builder import Invocation, build, build_interactive
from devflow.agent.catalog import AgentSpec, resolve
from devflow.agent.request import InvocationRequest, PtyRequest
from devflow.config import DevflowConfig, prepare_dirs
from devflow.errors import AgentUnavailableError, SpawnError
from devflow.process.registry import Registry
from devflow.process.supervisor import ProcessHandle, ProcessSupervisor
from devflow.process.temp import TempContext, WorkdirFiles
from devflow.pty.manager import PtyHandle, PtyManager
from devflow.session.wire import EventSink

logger = logging.getLogger(__name__)


class ProcessInfo(BaseModel):
    """One running piped process, as reported by ``list_processes_detailed``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    process_id: str
    stage_execution_id: str | None = None


class AgentRuntime:
    """Spawn, list, talk to and cancel agent processes and PTY sessions."""

    def __init__(self, config: DevflowConfig | None = None) -> None:
        self.config = config or DevflowConfig()
        self.processes: Registry[ProcessHandle] = Registry("Process")
        self.ptys: Registry[PtyHandle] = Registry("PTY session")
        # Shared so overlapping runs in one workdir stack their staged files.
        self.workdir_files = WorkdirFiles()
        self._supervisor = ProcessSupervisor(self.processes, self.config.process)
        self._pty_manager = PtyManager(self.ptys, self.config.pty)

    def start(self) -> None:
        """Prepare the data dir and sweep scratch dirs from a crashed run."""
        prepare_dirs(self.config)

    async def __aenter__(self) -> AgentRuntime:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    def resolve_agent(self, agent: str | None) -> AgentSpec:
        return resolve(agent, self.config.default_agent)

    def plan(self, request: InvocationRequest, instance_id: str | None = None) -> Invocation:
        """Build the command for ``request`` without staging or spawning."""
        scratch = self.config.tmp_dir / (instance_id or str(uuid.uuid4()))
        return build(request, self.resolve_agent(request.agent), scratch)

    # ------------------------------------------------------------------
    # Piped agent processes
    # ------------------------------------------------------------------

    async def spawn_agent(
        self, request: InvocationRequest | dict[str, Any], on_event: EventSink
    ) -> str:
        """Start a piped agent run and return its process id.

        Raises:
            ConfigTranslationError: malformed MCP config.
            TempFileError: staged files could not be written.
            SpawnError: the agent binary could not be started.
        """
        if not isinstance(request, InvocationRequest):
            request = InvocationRequest.model_validate(request)

        instance_id = str(uuid.uuid4())
        invocation = self.plan(request, instance_id)
        temp = TempContext(self.config.tmp_dir / instance_id, self.workdir_files)
        await temp.materialize(invocation.files)

        try:
            return await self._supervisor.spawn(
                invocation,
                on_event,
                temp=temp,
                instance_id=instance_id,
                linkage_id=request.linkage_id,
                session_id=request.session_id,
            )
        except Exception:
            await temp.cleanup()
            raise

    async def kill_process(self, process_id: str) -> None:
        self.processes.kill(process_id)

    async def list_processes(self) -> list[str]:
        return self.processes.list()

    async def list_processes_detailed(self) -> list[ProcessInfo]:
        return [
            ProcessInfo(process_id=pid, stage_execution_id=handle.linkage_id)
            for pid, handle in self.processes.list_detailed()
        ]

    async def check_agent_available(self, agent: str | None = None) -> str:
        """Return the agent CLI's version string.

        Raises:
            SpawnError: the binary is not installed.
            AgentUnavailableError: the version check exited non-zero.
        """
        spec = self.resolve_agent(agent)
        try:
            proc = await asyncio.create_subprocess_exec(
                spec.binary,
                spec.version_flag,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"Agent CLI not found: {e}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.debug(
                "%s %s failed: %s",
                spec.binary,
                spec.version_flag,
                stderr.decode("utf-8", errors="replace").strip(),
            )
            raise AgentUnavailableError("Agent CLI returned error")
        return stdout.decode("utf-8", errors="replace").strip()

    # ------------------------------------------------------------------
    # Interactive PTY sessions
    # ------------------------------------------------------------------

    async def spawn_pty(
        self,
        request: PtyRequest | dict[str, Any] | None,
        on_event: EventSink,
    ) -> str:
        """Start an interactive agent session and return its id.

        Raises:
            TempFileError: staged files could not be written.
            SpawnError: the PTY could not be opened or the binary started.
        """
        if request is None:
            request = PtyRequest()
        elif not isinstance(request, PtyRequest):
            request = PtyRequest.model_validate(request)

        instance_id = str(uuid.uuid4())
        scratch = self.config.tmp_dir / instance_id
        invocation = build_interactive(request, self.resolve_agent(request.agent), scratch)
        temp = TempContext(scratch, self.workdir_files)
        await temp.materialize(invocation.files)

        try:
            return await self._pty_manager.spawn(
                invocation,
                on_event,
                cols=request.cols,
                rows=request.rows,
                temp=temp,
                instance_id=instance_id,
            )
        except Exception:
            await temp.cleanup()
            raise

    async def write_to_pty(self, session_id: str, data: bytes | str) -> None:
        await self._pty_manager.write(session_id, data)

    async def resize_pty(self, session_id: str, cols: int, rows: int) -> None:
        if not (0 < cols < 65536 and 0 < rows < 65536):
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        self._pty_manager.resize(session_id, cols, rows)

    async def kill_pty(self, session_id: str) -> None:
        self._pty_manager.kill(session_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float | None = 10.0) -> None:
        """Cancel every live process and session and wait for their cleanup."""
        self.processes.kill_all()
        await asyncio.gather(
            self._supervisor.join(timeout),
            self._pty_manager.cleanup(timeout),
        )
        logger.info("Agent runtime shut down")
