"""Persistence adapters for detection state.

The engine reads responses and the catalog through a ``DetectionStore`` and
writes detection results back through its replace operations. Both replace
operations for one user are expected to run inside ``transaction()``, which
serializes writers per user and rolls back on failure.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError

from .schema import (
    ArchetypeCatalog,
    ArchetypeDefinition,
    ArchetypeMatch,
    DetectedArchetype,
    Dimension,
    ImpactLevel,
    QuickWin,
    QuickWinSource,
    QuickWinStatus,
    QuickWinTemplate,
    Response,
    utc_now,
)

logger = logging.getLogger(__name__)

# Seconds to wait for another process to release the store file
FILE_LOCK_TIMEOUT = 30


class StorageError(Exception):
    """Raised when detection state cannot be read or written."""


class DetectionStore(ABC):
    """Storage operations the detection engine depends on.

    Replace operations are full replacements, never merges:
    - ``replace_archetype_matches`` drops every previous match for the user
    - ``replace_system_quick_wins`` drops every previous ``system`` quick win
      and keeps ``user`` quick wins untouched

    ``transaction(user_id)`` must give exclusive access to one user's state
    for its duration and leave the state unchanged if the block raises.
    """

    @abstractmethod
    def load_latest_responses(self, user_id: str) -> list[Response]:
        """Response history for a user (may contain superseded answers)."""

    @abstractmethod
    def load_archetype_catalog(self) -> list[ArchetypeDefinition]:
        """Archetype definitions in priority order."""

    @abstractmethod
    def load_quick_win_templates(self, archetype_names: Sequence[str]) -> list[QuickWinTemplate]:
        """Templates for the named archetypes, in catalog order."""

    @abstractmethod
    def replace_archetype_matches(self, user_id: str, matches: Sequence[ArchetypeMatch]) -> None:
        """Replace all of a user's detected archetypes."""

    @abstractmethod
    def replace_system_quick_wins(self, user_id: str, quick_wins: Sequence[QuickWin]) -> None:
        """Replace a user's system quick wins, keeping user quick wins."""

    @abstractmethod
    def transaction(self, user_id: str):
        """Context manager giving atomic, exclusive access to a user's state."""

    @abstractmethod
    def save_responses(self, user_id: str, responses: Iterable[Response]) -> None:
        """Append a questionnaire submission to the user's history."""

    @abstractmethod
    def load_archetype_matches(self, user_id: str) -> list[DetectedArchetype]:
        """The user's current detected archetypes."""

    @abstractmethod
    def clear_archetype_matches(self, user_id: str) -> int:
        """Remove the user's detected archetypes. Returns how many were removed."""

    @abstractmethod
    def load_quick_wins(self, user_id: str) -> list[QuickWin]:
        """All quick wins for the user, system and user created."""

    @abstractmethod
    def add_user_quick_win(
        self,
        user_id: str,
        title: str,
        dimension: Dimension,
        description: str = "",
        impact_level: ImpactLevel = ImpactLevel.MEDIUM,
        archetype: Optional[str] = None,
    ) -> QuickWin:
        """Record a quick win entered by the user."""

    @abstractmethod
    def update_quick_win_status(
        self,
        user_id: str,
        quick_win_id: str,
        status: QuickWinStatus,
        notes: Optional[str] = None,
    ) -> QuickWin:
        """Change a quick win's status."""


USER_TABLES = ("responses", "archetypes", "quick_wins")


class StoreState(BaseModel):
    """Serialized form of all detection state."""
    version: str = "1.0.0"
    responses: dict[str, list[Response]] = Field(default_factory=dict)
    archetypes: dict[str, list[DetectedArchetype]] = Field(default_factory=dict)
    quick_wins: dict[str, list[QuickWin]] = Field(default_factory=dict)
    revisions: dict[str, int] = Field(
        default_factory=dict,
        description="Per-user commit counter used to detect concurrent writers"
    )

    def user_rows(self, user_id: str) -> tuple:
        """Deep copy of one user's rows, ``None`` where the user has none."""
        return tuple(copy.deepcopy(getattr(self, t).get(user_id)) for t in USER_TABLES)

    def set_user_rows(self, user_id: str, rows: tuple) -> None:
        for name, saved in zip(USER_TABLES, rows):
            table = getattr(self, name)
            if saved is None:
                table.pop(user_id, None)
            else:
                table[user_id] = saved


class InMemoryStore(DetectionStore):
    """Thread-safe in-process store.

    Each user has a re-entrant lock. Every read and mutation takes it, and
    ``transaction`` holds it across several mutations, snapshotting the
    user's state first so it can be restored if the block fails.
    """

    def __init__(self, catalog: ArchetypeCatalog):
        self.catalog = catalog
        self._state = StoreState()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._open_transactions: set[str] = set()

    # -- Locking -------------------------------------------------------------

    def _user_lock(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def transaction(self, user_id: str) -> Iterator["InMemoryStore"]:
        with self._user_lock(user_id):
            if user_id in self._open_transactions:
                # Nested use joins the outer transaction
                yield self
                return

            self._sync(user_id)
            snapshot = self._state.user_rows(user_id)
            self._open_transactions.add(user_id)
            try:
                yield self
                self._commit(user_id)
            except BaseException:
                self._state.set_user_rows(user_id, snapshot)
                logger.warning("Rolled back state for user %s", user_id)
                raise
            finally:
                self._open_transactions.discard(user_id)

    @contextmanager
    def _reading(self, user_id: str) -> Iterator[StoreState]:
        with self._user_lock(user_id):
            if user_id not in self._open_transactions:
                self._sync(user_id)
            yield self._state

    def _sync(self, user_id: str) -> None:
        """Refresh a user's rows from the backing storage. Nothing to do in memory."""

    def _commit(self, user_id: str) -> None:
        """Persist a user's committed rows. Nothing to do in memory."""

    # -- Reads ---------------------------------------------------------------

    def load_latest_responses(self, user_id: str) -> list[Response]:
        with self._reading(user_id) as state:
            return list(state.responses.get(user_id, []))

    def load_archetype_catalog(self) -> list[ArchetypeDefinition]:
        return list(self.catalog.archetypes)

    def load_quick_win_templates(self, archetype_names: Sequence[str]) -> list[QuickWinTemplate]:
        return self.catalog.templates_for(archetype_names)

    def load_archetype_matches(self, user_id: str) -> list[DetectedArchetype]:
        with self._reading(user_id) as state:
            return list(state.archetypes.get(user_id, []))

    def load_quick_wins(self, user_id: str) -> list[QuickWin]:
        with self._reading(user_id) as state:
            return list(state.quick_wins.get(user_id, []))

    # -- Writes --------------------------------------------------------------

    def save_responses(self, user_id: str, responses: Iterable[Response]) -> None:
        responses = list(responses)
        with self.transaction(user_id):
            history = list(self._state.responses.get(user_id, []))
            history.extend(responses)
            self._state.responses[user_id] = history
        logger.debug("Saved %d responses for user %s", len(responses), user_id)

    def replace_archetype_matches(self, user_id: str, matches: Sequence[ArchetypeMatch]) -> None:
        detected_at = utc_now()
        with self.transaction(user_id):
            self._state.archetypes[user_id] = [
                DetectedArchetype.from_match(user_id, m, detected_at) for m in matches
            ]
        logger.debug("Replaced archetypes for user %s with %d matches", user_id, len(matches))

    def replace_system_quick_wins(self, user_id: str, quick_wins: Sequence[QuickWin]) -> None:
        for qw in quick_wins:
            if qw.source != QuickWinSource.SYSTEM:
                raise ValueError(f"Only system quick wins can be replaced, got '{qw.title}' from {qw.source.value}")
        with self.transaction(user_id):
            kept = [
                qw for qw in self._state.quick_wins.get(user_id, [])
                if qw.source == QuickWinSource.USER
            ]
            self._state.quick_wins[user_id] = kept + list(quick_wins)
        logger.debug(
            "Replaced system quick wins for user %s: %d system, %d user kept",
            user_id, len(quick_wins), len(kept),
        )

    def clear_archetype_matches(self, user_id: str) -> int:
        with self.transaction(user_id):
            removed = len(self._state.archetypes.pop(user_id, []))
        return removed

    def add_user_quick_win(
        self,
        user_id: str,
        title: str,
        dimension: Dimension,
        description: str = "",
        impact_level: ImpactLevel = ImpactLevel.MEDIUM,
        archetype: Optional[str] = None,
    ) -> QuickWin:
        quick_win = QuickWin(
            user_id=user_id,
            title=title,
            description=description,
            source=QuickWinSource.USER,
            archetype=archetype,
            dimension=dimension,
            impact_level=impact_level,
        )
        with self.transaction(user_id):
            items = list(self._state.quick_wins.get(user_id, []))
            items.append(quick_win)
            self._state.quick_wins[user_id] = items
        return quick_win

    def update_quick_win_status(
        self,
        user_id: str,
        quick_win_id: str,
        status: QuickWinStatus,
        notes: Optional[str] = None,
    ) -> QuickWin:
        with self.transaction(user_id):
            items = list(self._state.quick_wins.get(user_id, []))
            for i, qw in enumerate(items):
                if qw.id == quick_win_id:
                    changes = {"status": status, "updated_at": utc_now()}
                    if notes is not None:
                        changes["notes"] = notes
                    updated = qw.model_copy(update=changes)
                    items[i] = updated
                    self._state.quick_wins[user_id] = items
                    return updated
        raise ValueError(f"Quick win not found: {quick_win_id}")


class JsonFileStore(InMemoryStore):
    """Store backed by a single JSON document shared by several processes.

    A transaction starts by reloading the user's rows from disk. On commit
    the document is re-read under an exclusive file lock, only that user's
    rows are swapped in, and the result is written through a temporary file
    and an atomic rename. Other users' rows on disk are never overwritten
    from this process's memory.

    Each user carries a revision counter. If another process committed the
    same user since this transaction started, the commit fails with
    ``StorageError`` and the transaction rolls back.
    """

    def __init__(self, path: Union[str, Path], catalog: ArchetypeCatalog):
        super().__init__(catalog)
        self.path = Path(path)
        self._commit_lock = threading.Lock()
        self._file_lock = FileLock(
            str(self.path.with_name(self.path.name + ".lock")),
            timeout=FILE_LOCK_TIMEOUT,
        )
        self._state = self._read_document()
        self._seen_revisions: dict[str, int] = dict(self._state.revisions)

    def _read_document(self) -> StoreState:
        if not self.path.exists():
            return StoreState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return StoreState.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            raise StorageError(f"Cannot read store {self.path}: {e}") from e

    def _sync(self, user_id: str) -> None:
        document = self._read_document()
        self._state.set_user_rows(user_id, document.user_rows(user_id))
        self._seen_revisions[user_id] = document.revisions.get(user_id, 0)

    def _commit(self, user_id: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._commit_lock, self._file_lock:
                document = self._read_document()
                revision = document.revisions.get(user_id, 0)
                if revision != self._seen_revisions.get(user_id, 0):
                    raise StorageError(
                        f"State for user {user_id} in {self.path} was changed by another writer"
                    )
                document.set_user_rows(user_id, self._state.user_rows(user_id))
                document.revisions[user_id] = revision + 1
                self._write_document(document)
        except Timeout as e:
            raise StorageError(f"Timed out waiting for lock on {self.path}") from e
        except OSError as e:
            raise StorageError(f"Cannot write store {self.path}: {e}") from e

        self._seen_revisions[user_id] = revision + 1
        self._state.revisions[user_id] = revision + 1

    def _write_document(self, document: StoreState) -> None:
        data = document.model_dump(mode="json")
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
