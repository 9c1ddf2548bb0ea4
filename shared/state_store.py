"""
File-backed cycle state store for the TDD cycle metrics pipeline.

Each post-commit hook runs in a fresh process, so the open RED of every
branch lives in a small JSON file. This module provides:
- Exclusive, time-bounded locking around read-modify-write
- Atomic replacement of the state file
- De-duplication of re-processed commit hashes
- The RED/GREEN pairing rules that produce cycle durations
"""

import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator

from pydantic import ValidationError

from config.settings import Settings, get_settings
from shared.models import CycleState, CycleObservation, Phase, ensure_utc, utc_now

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class CycleStateError(Exception):
    """Cycle state could not be read or written."""


class CycleStateLockTimeout(CycleStateError):
    """The state lock was not acquired in time."""


class StateFile:
    """JSON document guarded by a sidecar lock file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def locked(self, timeout: float, poll_interval: float = 0.05) -> Iterator[None]:
        """Hold an exclusive lock, giving up after ``timeout`` seconds."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise CycleStateError(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise CycleStateLockTimeout(
                            f"State lock {self.lock_path} busy after {timeout:.2f}s"
                        )
                    time.sleep(poll_interval)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def read(self) -> Dict[str, Any]:
        """Load the document; a missing or corrupt file reads as empty."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupted cycle state file {self.path}, starting fresh: {e}")
            return {}
        except OSError as e:
            raise CycleStateError(f"Cannot read {self.path}: {e}") from e

        if not isinstance(data, dict):
            logger.warning(f"Unexpected cycle state layout in {self.path}, starting fresh")
            return {}
        return data

    def write(self, data: Dict[str, Any]) -> None:
        """Replace the document atomically."""
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                json.dump(data, tmp, indent=2, sort_keys=True)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CycleStateError(f"Cannot write {self.path}: {e}") from e


class CycleStateStore:
    """Per-branch RED/GREEN pairing persisted across hook invocations."""

    def __init__(
        self,
        path: Path,
        lock_timeout: float = 2.0,
        poll_interval: float = 0.05,
        remembered_hashes: int = 200,
    ):
        self.state_file = StateFile(path)
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.remembered_hashes = remembered_hashes

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CycleStateStore":
        settings = settings or get_settings()
        return cls(
            Path(settings.storage.state_file),
            lock_timeout=settings.cycle.lock_timeout_seconds,
            poll_interval=settings.cycle.lock_poll_interval,
            remembered_hashes=settings.storage.remembered_hashes,
        )

    def observe(
        self,
        branch: str,
        phase: Phase,
        occurred_at: datetime,
        commit_hash: Optional[str] = None,
    ) -> Optional[timedelta]:
        """Feed one event; returns the cycle duration when a GREEN closes a cycle."""
        return self.record(branch, phase, occurred_at, commit_hash).duration

    def record(
        self,
        branch: str,
        phase: Phase,
        occurred_at: datetime,
        commit_hash: Optional[str] = None,
    ) -> CycleObservation:
        """Feed one event and return the full outcome.

        RED opens (or replaces) the branch's pending cycle, GREEN closes it.
        Other phases leave the state alone and do no I/O. Lock contention
        yields a skipped observation instead of blocking the commit.
        """
        if phase not in (Phase.RED, Phase.GREEN):
            return CycleObservation()

        occurred_at = ensure_utc(occurred_at)
        try:
            with self.state_file.locked(self.lock_timeout, self.poll_interval):
                data = self.state_file.read()
                observation = self._apply(data, branch, phase, occurred_at, commit_hash)
                if not observation.duplicate:
                    self.state_file.write(data)
                return observation
        except CycleStateLockTimeout as e:
            logger.info(f"Skipping cycle accounting for {commit_hash or branch}: {e}")
            return CycleObservation.skipped_observation()

    def _apply(
        self,
        data: Dict[str, Any],
        branch: str,
        phase: Phase,
        occurred_at: datetime,
        commit_hash: Optional[str],
    ) -> CycleObservation:
        data["version"] = STATE_VERSION
        processed = data.setdefault("processed", [])
        branches = data.setdefault("branches", {})

        if commit_hash and commit_hash in processed:
            logger.info(f"Commit {commit_hash} already accounted for, not re-pairing")
            return CycleObservation(duplicate=True)

        current = self._load_branch(branches, branch)

        if phase == Phase.RED:
            abandoned = current.pending_red_at if current and current.is_open else None
            if abandoned is not None:
                logger.info(
                    f"Branch {branch}: RED {current.pending_red_hash or '?'} abandoned, "
                    f"replaced by {commit_hash or '?'}"
                )
            branches[branch] = CycleState(
                branch=branch,
                pending_red_at=occurred_at,
                pending_red_hash=commit_hash,
            ).model_dump(mode="json")
            observation = CycleObservation(abandoned_red_at=abandoned)
        elif current is None or not current.is_open:
            logger.info(f"Branch {branch}: GREEN {commit_hash or '?'} has no pending RED")
            observation = CycleObservation(orphan=True)
        else:
            duration = max(occurred_at - current.pending_red_at, timedelta(0))
            branches.pop(branch, None)
            observation = CycleObservation(
                duration=duration,
                cycle_started_at=current.pending_red_at,
            )

        if commit_hash:
            processed.append(commit_hash)
            del processed[:-self.remembered_hashes]
        return observation

    @staticmethod
    def _load_branch(branches: Dict[str, Any], branch: str) -> Optional[CycleState]:
        raw = branches.get(branch)
        if raw is None:
            return None
        try:
            return CycleState.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Dropping unreadable cycle state for branch {branch}: {e}")
            return None

    def get(self, branch: str) -> Optional[CycleState]:
        """Current state of one branch, without locking."""
        return self._load_branch(self.state_file.read().get("branches", {}), branch)

    def pending(self) -> List[CycleState]:
        """All branches with an open RED, oldest first."""
        branches = self.state_file.read().get("branches", {})
        states = [self._load_branch(branches, name) for name in branches]
        open_states = [s for s in states if s is not None and s.is_open]
        return sorted(open_states, key=lambda s: s.pending_red_at or utc_now())
