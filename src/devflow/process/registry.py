"""Registry — live instances keyed by id, each with a one-shot cancel sender."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from devflow.errors import AlreadySignaledError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class Handle:
    """Base registry entry.

    ``cancel`` is the receiving supervisor's future. The registry hands it
    out at most once; after that the slot is ``None``.
    """

    id: str
    cancel: asyncio.Future[None] | None = field(default=None, repr=False)


H = TypeVar("H", bound=Handle)


class Registry(Generic[H]):
    """Concurrency-safe map from instance id to its handle.

    One coarse lock guards the map and is held only for the lookup,
    insert or removal itself, never across process or terminal I/O.
    Cancellation futures are resolved outside the lock, so ``kill`` and
    ``kill_all`` must be called from the event loop thread.
    """

    def __init__(self, kind: str = "Process") -> None:
        self._kind = kind
        self._entries: dict[str, H] = {}
        self._lock = threading.Lock()

    @property
    def not_found_message(self) -> str:
        return f"{self._kind} not found"

    def register(self, handle: H) -> None:
        with self._lock:
            self._entries[handle.id] = handle

    def remove(self, instance_id: str) -> H | None:
        with self._lock:
            return self._entries.pop(instance_id, None)

    def get(self, instance_id: str) -> H:
        """Return the live handle or raise ``NotFoundError``."""
        with self._lock:
            handle = self._entries.get(instance_id)
        if handle is None:
            raise NotFoundError(self.not_found_message)
        return handle

    def kill(self, instance_id: str) -> None:
        """Fire the cancellation sender for ``instance_id``.

        Raises:
            NotFoundError: no such id, or it already terminated.
            AlreadySignaledError: kill was already requested, or the
                supervisor stopped listening before the signal arrived.
        """
        with self._lock:
            handle = self._entries.get(instance_id)
            if handle is None:
                raise NotFoundError(self.not_found_message)
            sender, handle.cancel = handle.cancel, None

        if sender is None:
            raise AlreadySignaledError("Kill signal already sent")
        if sender.done():
            raise AlreadySignaledError(f"{self._kind} already exited")
        sender.set_result(None)
        logger.info("Kill requested for %s %s", self._kind.lower(), instance_id)

    def kill_all(self) -> int:
        """Signal every live instance. Returns how many were signalled.

        Individual failures are logged and skipped; entries stay in place
        until their supervisors remove them after the terminal event.
        """
        with self._lock:
            senders = []
            for handle in self._entries.values():
                if handle.cancel is not None:
                    senders.append((handle.id, handle.cancel))
                    handle.cancel = None

        signalled = 0
        for instance_id, sender in senders:
            try:
                if not sender.done():
                    sender.set_result(None)
                    signalled += 1
            except Exception:
                logger.exception("Failed to signal %s %s", self._kind.lower(), instance_id)
        if senders:
            logger.info("Signalled %d %s instance(s) for shutdown", signalled, self._kind.lower())
        return signalled

    def list(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def list_detailed(self) -> list[tuple[str, H]]:
        with self._lock:
            return list(self._entries.items())

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
