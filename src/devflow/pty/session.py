"""PTY session — one interactive agent CLI on a pseudo-terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from dataclasses import dataclass, field
from typing import Callable

from devflow.errors import NotFoundError

logger = logging.getLogger(__name__)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the PTY (fd 0) its
    # controlling terminal so ^C and SIGWINCH reach the agent. Keep it to
    # the ioctl; anything taking a lock here can deadlock the forked child.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class PtySession:
    """A child process attached to the slave side of a fresh PTY.

    The master fd is the duplex byte stream: ``write`` feeds the child's
    input, ``read_blocking`` drains its output, ``resize`` changes the
    terminal size. The child runs in its own session/process group so
    ``kill`` takes down everything it started.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop.
    """

    command: list[str]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 120
    rows: int = 24
    term: str = "xterm-256color"

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _stop: threading.Event = field(default_factory=threading.Event, init=False)
    _fd_lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _closed: bool = field(default=False, init=False)

    def start(self) -> None:
        """Open the PTY at the requested size and spawn the child.

        Raises:
            OSError: the PTY could not be opened or the command not executed.
            ValueError: argv, env or cwd holds a NUL byte.
        """
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, self.cols, self.rows)
            env = {**os.environ, **self.env, "TERM": self.term}
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
                # Not thread-safe in general (reader threads are live here);
                # the hook must stay a single ioctl with no locks taken.
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        logger.info(
            "PTY child started: pid=%d size=%dx%d cmd=%s",
            self._proc.pid,
            self.cols,
            self.rows,
            " ".join(self.command),
        )

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def read_blocking(self, on_chunk: Callable[[bytes], None], read_size: int = 4096) -> None:
        """Forward raw output chunks until EOF, a read error, or ``stop_reading``.

        Blocks; run it on a worker thread.
        """
        fd = self._master_fd
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([fd], [], [], 0.1)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                data = os.read(fd, read_size)
            except OSError:
                # EIO once every slave fd is closed
                break
            if not data:
                break
            on_chunk(data)

    def stop_reading(self) -> None:
        self._stop.set()

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the child's input."""
        with self._fd_lock:
            if self._closed:
                raise NotFoundError("PTY session not found")
            view = memoryview(data)
            while view:
                n = os.write(self._master_fd, view)
                view = view[n:]

    def resize(self, cols: int, rows: int) -> None:
        with self._fd_lock:
            if self._closed:
                raise NotFoundError("PTY session not found")
            _set_winsize(self._master_fd, cols, rows)
        self.cols, self.rows = cols, rows
        if self._proc is not None and self._proc.poll() is None:
            try:
                os.killpg(self._proc.pid, signal.SIGWINCH)
            except OSError:
                pass

    def poll(self) -> int | None:
        """Exit code if the child has exited, else None."""
        if self._proc is None:
            return None
        return self._proc.poll()

    def kill(self) -> None:
        """SIGKILL the child's whole process group."""
        if self._proc is None or self._proc.poll() is not None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
            logger.info("Killed PTY child (pgid=%d)", self._proc.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)
        except OSError as e:
            logger.warning("Error killing PTY child %d: %s", self._proc.pid, e)

    def reap(self, timeout: float = 2.0) -> None:
        """Wait for the child to be reaped (avoids zombies)."""
        if self._proc is None:
            return
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("PTY child %d did not exit after kill", self._proc.pid)

    def close(self) -> None:
        """Close the master fd. Safe to call more than once."""
        with self._fd_lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self._master_fd)
            except OSError:
                pass
