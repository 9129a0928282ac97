"""PTY process management — interactive agent sessions.

Interactive agents run on a pseudo-terminal in their own process group,
with a blocking reader thread per session, polling-based exit detection,
live resize, and guaranteed cleanup.
"""

from devflow.pty.manager import PtyHandle, PtyManager
from devflow.pty.session import PtySession

__all__ = [
    "PtyHandle",
    "PtyManager",
    "PtySession",
]
