"""Wire protocol — typed lifecycle events and the bus that carries them.

Supervisors never talk to a UI directly. They call an event sink (any
callable taking one event); ``Wire.send`` is such a sink and fans events out
to every subscriber queue, which is how the CLI consumes them.

Events serialize with ``model_dump()`` to the tagged shape the desktop front
end expects, e.g. ``{"type": "stdout_line", "line": "..."}``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Piped agent process events
# ---------------------------------------------------------------------------


class Started(BaseModel):
    type: Literal["started"] = "started"
    process_id: str
    session_id: str | None = None


class StdoutLine(BaseModel):
    type: Literal["stdout_line"] = "stdout_line"
    line: str


class StderrLine(BaseModel):
    type: Literal["stderr_line"] = "stderr_line"
    line: str


class Completed(BaseModel):
    type: Literal["completed"] = "completed"
    process_id: str
    exit_code: int | None = None


class ProcessError(BaseModel):
    type: Literal["error"] = "error"
    process_id: str
    message: str


AgentStreamEvent = Annotated[
    Union[Started, StdoutLine, StderrLine, Completed, ProcessError],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Interactive PTY events
# ---------------------------------------------------------------------------


class PtyStarted(BaseModel):
    type: Literal["started"] = "started"
    id: str


class PtyOutput(BaseModel):
    type: Literal["output"] = "output"
    data: str


class PtyExited(BaseModel):
    type: Literal["exited"] = "exited"
    id: str
    exit_code: int | None = None


class PtyError(BaseModel):
    type: Literal["error"] = "error"
    id: str
    message: str


PtyEvent = Annotated[
    Union[PtyStarted, PtyOutput, PtyExited, PtyError],
    Field(discriminator="type"),
]

Event = Union[
    Started,
    StdoutLine,
    StderrLine,
    Completed,
    ProcessError,
    PtyStarted,
    PtyOutput,
    PtyExited,
    PtyError,
]

EventSink = Callable[[Event], None]

TERMINAL_EVENTS = (Completed, PtyExited)


def is_terminal(event: Event) -> bool:
    """True for the last event an instance ever emits."""
    return isinstance(event, TERMINAL_EVENTS)


class Wire:
    """Async message bus: supervisors -> UI subscribers.

    Single-producer, multi-consumer broadcast. Must be used from the event
    loop thread.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[Event | None]] = []
        self._closed: bool = False

    def __call__(self, event: Event) -> None:
        self.send(event)

    def send(self, event: Event) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[Event | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[Event | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)


def deliver(sink: EventSink, event: Event) -> None:
    """Hand ``event`` to ``sink``; a failing sink never breaks supervision."""
    try:
        sink(event)
    except Exception:
        logger.exception("Event sink raised while handling %s event", event.type)
