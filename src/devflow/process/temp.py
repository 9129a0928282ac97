"""Per-invocation scratch dir plus files dropped into the workdir.

Workdir files go through a :class:`WorkdirFiles` shared by every run of one
runtime. Each run adds a layer on top of the file's original content; when a
run ends its layer is peeled off and the file is rewritten from the original
plus the layers still live. The last run out puts a user's own ``AGENTS.md``
or ``.gemini/settings.json`` back exactly as it was, or deletes the file and
any directories we created for it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import aiofiles.os

from devflow.agent.builder import Placement, StagedFile, WriteMode
from devflow.errors import TempFileError

logger = logging.getLogger(__name__)


@dataclass
class _Target:
    original: bytes | None
    created_dirs: list[Path] = field(default_factory=list)
    # (owner, staged) in the order the runs arrived
    layers: list[tuple[object, StagedFile]] = field(default_factory=list)

    def staged(self) -> list[StagedFile]:
        return [s for _, s in self.layers]


class WorkdirFiles:
    """Working-directory files staged by live invocations, keyed by path."""

    def __init__(self) -> None:
        self._targets: dict[Path, _Target] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, path: Path) -> bool:
        return Path(path) in self._targets

    async def add(self, owner: object, staged: StagedFile) -> None:
        """Layer ``staged`` onto its target and rewrite the file.

        Raises OSError or ValueError (unreadable original, invalid JSON). A
        layer that was registered before the failure is removed by
        :meth:`release`.
        """
        async with self._lock:
            path = staged.path
            target = self._targets.get(path)
            fresh = target is None
            if target is None:
                original: bytes | None = None
                if path.exists():
                    async with aiofiles.open(path, "rb") as f:
                        original = await f.read()
                target = _Target(original)

            content = _compose(target.original, [*target.staged(), staged])
            if fresh:
                if target.original is None:
                    _make_parents(path.parent, target.created_dirs)
                self._targets[path] = target
            # Track before writing so a partial write is still undone.
            target.layers.append((owner, staged))
            await _write_text(path, content)
            logger.debug(
                "Staged %s (%d live layer(s), %s)",
                path,
                len(target.layers),
                "modified" if target.original is not None else "new",
            )

    async def release(self, owner: object) -> None:
        """Peel every layer ``owner`` added. Errors are logged, never raised."""
        async with self._lock:
            for path, target in list(self._targets.items()):
                remaining = [(o, s) for o, s in target.layers if o is not owner]
                if len(remaining) == len(target.layers):
                    continue
                target.layers = remaining
                try:
                    if remaining:
                        await _write_text(path, _compose(target.original, target.staged()))
                        continue
                    del self._targets[path]
                    if target.original is None:
                        await aiofiles.os.remove(path)
                    else:
                        async with aiofiles.open(path, "wb") as f:
                            await f.write(target.original)
                except FileNotFoundError:
                    pass
                except (OSError, ValueError) as e:
                    logger.warning("Failed to clean up %s: %s", path, e)
                if not remaining:
                    _remove_dirs(target.created_dirs)


class TempContext:
    """Ephemeral storage owned by exactly one invocation.

    Usage::

        ctx = TempContext(config.tmp_dir / instance_id, runtime_workdir_files)
        await ctx.materialize(invocation.files)
        ...  # spawn, stream, drain
        await ctx.cleanup()

    Without a shared ``workdir_files`` the context gets a private one, which
    is only safe when no other run touches the same working directory.
    """

    def __init__(self, scratch_dir: Path, workdir_files: WorkdirFiles | None = None) -> None:
        self.scratch_dir = Path(scratch_dir)
        self._workdir = workdir_files if workdir_files is not None else WorkdirFiles()
        self._written: list[Path] = []
        self._cleaned = False

    @property
    def written(self) -> list[Path]:
        """Working-directory files currently staged."""
        return list(self._written)

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    async def materialize(self, files: list[StagedFile]) -> None:
        """Write all staged files. On failure, undo what was written.

        Raises:
            TempFileError: a file could not be created or written.
        """
        try:
            for staged in files:
                if staged.placement is Placement.WORKDIR:
                    self._written.append(staged.path)
                    await self._workdir.add(self, staged)
                else:
                    await self._write_scratch(staged)
        except (OSError, ValueError) as e:
            await self.cleanup()
            raise TempFileError(f"Failed to stage agent files: {e}") from e

    async def _write_scratch(self, staged: StagedFile) -> None:
        staged.path.parent.mkdir(parents=True, exist_ok=True)
        if staged.copy_from is not None:
            if not staged.copy_from.is_file():
                logger.debug("Nothing to copy from %s", staged.copy_from)
                return
            async with aiofiles.open(staged.copy_from, "rb") as src:
                data = await src.read()
            async with aiofiles.open(staged.path, "wb") as dst:
                await dst.write(data)
            return
        async with aiofiles.open(staged.path, "w", encoding="utf-8") as f:
            await f.write(staged.content)

    async def cleanup(self) -> bool:
        """Peel this run's workdir layers, then remove the scratch dir.

        Runs once; later calls return False without touching anything.
        Errors are logged, never raised.
        """
        if self._cleaned:
            return False
        self._cleaned = True

        await self._workdir.release(self)
        self._written.clear()
        shutil.rmtree(self.scratch_dir, ignore_errors=True)
        return True


async def _write_text(path: Path, content: str) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)


def _make_parents(directory: Path, created: list[Path]) -> None:
    missing: list[Path] = []
    d = directory
    while not d.exists():
        missing.append(d)
        d = d.parent
    try:
        for d in reversed(missing):
            d.mkdir()
            created.append(d)
    except OSError:
        _remove_dirs(created)
        created.clear()
        raise


def _remove_dirs(created: list[Path]) -> None:
    for d in reversed(created):
        try:
            os.rmdir(d)
        except OSError:
            pass


def _compose(original: bytes | None, layers: list[StagedFile]) -> str:
    current = original
    text = ""
    for staged in layers:
        text = _render(staged, current)
        current = text.encode("utf-8")
    return text



def _render(staged: StagedFile, original: bytes | None) -> str:
    if original is None or staged.mode is WriteMode.REPLACE:
        if staged.mode is WriteMode.MERGE_JSON and staged.merge_key:
            return json.dumps({staged.merge_key: json.loads(staged.content)}, indent=2)
        return staged.content

    existing = original.decode("utf-8", errors="replace")
    if staged.mode is WriteMode.APPEND:
        if not existing.strip():
            return staged.content
        return existing.rstrip("\n") + "\n\n" + staged.content

    # MERGE_JSON into an existing file
    try:
        doc = json.loads(existing) if existing.strip() else {}
    except json.JSONDecodeError as e:
        raise ValueError(f"{staged.path} is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise ValueError(f"{staged.path} does not hold a JSON object")
    current = doc.get(staged.merge_key)
    merged = dict(current) if isinstance(current, dict) else {}
    merged.update(json.loads(staged.content))
    doc[staged.merge_key] = merged
    return json.dumps(doc, indent=2)
