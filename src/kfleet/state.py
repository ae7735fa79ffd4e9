"""Resumable operation state.

One JSON file per operation run under the state directory. The driver marks
each node step done as it commits, so a re-run with resume skips finished
work. State is advisory: a crash between a remote step and its mark makes
that step repeat.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from coolname import generate_slug
from pydantic import BaseModel, Field, ValidationError

from kfleet.errors import StateError


logger = logging.getLogger(__name__)


class StateStatus(str, Enum):
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


class OperationState(BaseModel):
    """Serialized state of one operation run.

    Attributes:
        id: State id, also the file stem.
        kind: Operation kind ("deploy", "upgrade", ...).
        status: Lifecycle status. COMPLETED means sealed.
        started_at: When the run was created.
        updated_at: Last write.
        done: Step labels already committed.
        values: Flat key/value table.
    """

    id: str
    kind: str
    status: StateStatus = StateStatus.RUNNING
    started_at: datetime
    updated_at: datetime
    done: list[str] = Field(default_factory=list)
    values: dict[str, str] = Field(default_factory=dict)


class StateStore:
    """Reads and writes operation state files in one directory.

    Only the coordinating task mutates the store; node tasks report back
    and the coordinator marks steps.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self._active: OperationState | None = None

    @property
    def active(self) -> OperationState:
        if self._active is None:
            raise StateError("No active operation state")
        return self._active

    @property
    def state_id(self) -> str | None:
        return self._active.id if self._active else None

    def _path(self, state_id: str) -> Path:
        return self.state_dir / f"{state_id}.json"

    def _save(self) -> None:
        state = self.active
        state.updated_at = datetime.now(timezone.utc)
        self.state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path(state.id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read(self, path: Path) -> OperationState:
        try:
            return OperationState(**json.loads(path.read_text()))
        except (OSError, ValueError, ValidationError) as exc:
            raise StateError(f"Cannot read state file {path}: {exc}") from exc

    def init(self, kind: str) -> str:
        """Allocate a fresh state file for `kind` and make it active.

        Returns:
            str: The new state id.
        """
        now = datetime.now(timezone.utc)
        state_id = f"{kind}-{now.strftime('%Y%m%dT%H%M%S')}-{generate_slug(2)}"
        self._active = OperationState(id=state_id, kind=kind, started_at=now, updated_at=now)
        self._save()
        logger.debug("State initialized: %s", self._path(state_id))
        return state_id

    def find_resumable(self, kind: str) -> str | None:
        """Return the latest state id of `kind` unless it was sealed.

        Returns:
            str | None: Resumable state id, or None when the most recent
            state of this kind is completed (or none exists).
        """
        if not self.state_dir.is_dir():
            return None

        candidates: list[OperationState] = []
        for path in self.state_dir.glob(f"{kind}-*.json"):
            try:
                state = self._read(path)
            except StateError as exc:
                logger.warning("Skipping unreadable state file: %s", exc)
                continue
            if state.kind == kind:
                candidates.append(state)

        if not candidates:
            return None
        latest = max(candidates, key=lambda s: s.started_at)
        if latest.status == StateStatus.COMPLETED:
            return None
        return latest.id

    def peek(self, state_id: str) -> OperationState:
        """Read a state file without making it active.

        Raises:
            StateError: If it does not exist or cannot be parsed.
        """
        path = self._path(state_id)
        if not path.is_file():
            raise StateError(f"State file not found: {path}")
        return self._read(path)

    def load(self, state_id: str) -> OperationState:
        """Make an existing state file active.

        Raises:
            StateError: If it does not exist, cannot be parsed, or is sealed.
        """
        state = self.peek(state_id)
        if state.status == StateStatus.COMPLETED:
            raise StateError(f"State {state_id} is already completed")
        state.status = StateStatus.RUNNING
        self._active = state
        self._save()
        logger.info("Resuming %s (%d step(s) already done)", state_id, len(state.done))
        return state

    def open(self, kind: str, resume: bool = False) -> str:
        """Resume the latest unfinished run of `kind` if asked, else start fresh."""
        if resume:
            state_id = self.find_resumable(kind)
            if state_id is not None:
                self.load(state_id)
                return state_id
            logger.info("No resumable %s state found, starting fresh", kind)
        return self.init(kind)

    def set(self, key: str, value: str) -> None:
        self.active.values[key] = value
        self._save()

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.active.values.get(key, default)

    def mark_step_done(self, label: str) -> None:
        if label not in self.active.done:
            self.active.done.append(label)
            self._save()

    def is_step_done(self, label: str) -> bool:
        return self._active is not None and label in self._active.done

    def complete(self) -> None:
        """Seal the active state so it is never offered for resume."""
        self.active.status = StateStatus.COMPLETED
        self._save()
        logger.debug("State sealed: %s", self.active.id)

    def fail(self) -> None:
        """Mark the active state failed; it stays resumable."""
        if self._active is None or self._active.status == StateStatus.COMPLETED:
            return
        self._active.status = StateStatus.FAILED
        self._save()
