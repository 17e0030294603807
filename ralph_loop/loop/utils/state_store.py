"""File-backed persistence for loop state records."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

import pydantic as pd

from ralph_loop.loop.contracts import LoopState
from ralph_loop.loop.errors import (
    InvalidStateError,
    LoopNotFoundError,
    LoopValidationError,
    PersistenceError,
)
from ralph_loop.loop.utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

_SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def is_safe_identifier(value: str) -> bool:
    """True if *value* can be used as a single path component."""
    return bool(_SAFE_IDENTIFIER.match(value)) and value not in (".", "..")


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then
    renames it into place, so a crash never leaves a half-written record.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_text_or_none(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class FileStateStore:
    """Stores one JSON document per loop at ``<root>/<projectId>/<taskId>.json``.

    Blocking file I/O runs in a worker thread. Operations on the same
    (project_id, task_id) key are serialized; different keys proceed
    concurrently.
    """

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Directory holding one sub-directory per project
        """
        self.root = Path(root)
        self._locks = KeyedLock()

    def _project_dir(self, project_id: str) -> Path:
        if not is_safe_identifier(project_id):
            raise LoopValidationError(f"Invalid project id: {project_id!r}")
        return self.root / project_id

    def _record_path(self, project_id: str, task_id: str) -> Path:
        if not is_safe_identifier(task_id):
            raise LoopValidationError(f"Invalid task id: {task_id!r}")
        return self._project_dir(project_id) / f"{task_id}.json"

    async def save(self, state: LoopState) -> Path:
        """Persist the full state, replacing any previous record for its key.

        Raises:
            PersistenceError: If the record could not be written.
        """
        path = self._record_path(state.project_id, state.task_id)
        # Serialize before yielding so the record reflects the state at call time.
        payload = state.to_json()
        async with self._locks.hold((state.project_id, state.task_id)):
            try:
                await asyncio.to_thread(_atomic_write_text, path, payload)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to save loop {state.project_id}/{state.task_id}: {e}"
                ) from e
        logger.debug(f"Saved loop {state.project_id}/{state.task_id} ({state.status.value})")
        return path

    async def get(self, project_id: str, task_id: str) -> Optional[LoopState]:
        """Load one record, or None if it does not exist.

        Raises:
            PersistenceError: If the record exists but cannot be read or parsed.
        """
        path = self._record_path(project_id, task_id)
        async with self._locks.hold((project_id, task_id)):
            try:
                raw = await asyncio.to_thread(_read_text_or_none, path)
            except OSError as e:
                raise PersistenceError(f"Failed to read loop {project_id}/{task_id}: {e}") from e
        if raw is None:
            return None
        try:
            return LoopState.from_json(raw)
        except pd.ValidationError as e:
            raise PersistenceError(f"Corrupt loop record {path}: {e}") from e

    async def list(self, project_id: str) -> List[LoopState]:
        """All readable records for a project, newest first by creation time."""
        project_dir = self._project_dir(project_id)
        try:
            states = await asyncio.to_thread(self._load_project, project_dir)
        except OSError as e:
            raise PersistenceError(f"Failed to list loops for {project_id}: {e}") from e
        states.sort(key=lambda s: s.created_at, reverse=True)
        return states

    def _load_project(self, project_dir: Path) -> List[LoopState]:
        if not project_dir.is_dir():
            return []
        states: List[LoopState] = []
        for path in project_dir.glob("*.json"):
            # Leftover temp files from interrupted writes start with a dot.
            if path.name.startswith("."):
                continue
            try:
                states.append(LoopState.from_json(path.read_text(encoding="utf-8")))
            except (OSError, pd.ValidationError) as e:
                logger.warning(f"Skipping unreadable loop record {path}: {e}")
        return states

    async def delete(self, project_id: str, task_id: str) -> None:
        """Remove a terminal record.

        Raises:
            LoopNotFoundError: If no record exists for the key.
            InvalidStateError: If the record is not terminal.
        """
        state = await self.get(project_id, task_id)
        if state is None:
            raise LoopNotFoundError(f"Loop {project_id}/{task_id} not found")
        if not state.is_terminal:
            raise InvalidStateError(
                f"Loop {project_id}/{task_id} is {state.status.value}; only terminal loops can be deleted"
            )
        path = self._record_path(project_id, task_id)
        async with self._locks.hold((project_id, task_id)):
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as e:
                raise PersistenceError(f"Failed to delete loop {project_id}/{task_id}: {e}") from e
        logger.info(f"Deleted loop {project_id}/{task_id}")

    async def prune(self, project_id: str, keep: int) -> List[str]:
        """Delete terminal records beyond the newest *keep*. Returns deleted task ids."""
        states = await self.list(project_id)
        terminal = [s for s in states if s.is_terminal]
        deleted: List[str] = []
        for state in terminal[max(keep, 0):]:
            try:
                await self.delete(project_id, state.task_id)
            except LoopNotFoundError:
                continue
            deleted.append(state.task_id)
        if deleted:
            logger.info(f"Pruned {len(deleted)} old loop(s) for project {project_id}")
        return deleted
