"""
File checkpoints and rollback.

A checkpoint is an immutable set of file snapshots taken before a mutation
(or an empty marker before a user turn). Rollback restores what it can and
reports the rest; one locked or missing file never blocks the others.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from backend import Backend
from config import agent_config

from .errors import CheckpointNotFoundError

logger = logging.getLogger(__name__)

CHECKPOINT_USER_MESSAGE = "user_message"
CHECKPOINT_TOOL_EDIT = "tool_edit"
CHECKPOINT_KINDS = frozenset({CHECKPOINT_USER_MESSAGE, CHECKPOINT_TOOL_EDIT})


@dataclass(frozen=True)
class FileSnapshot:
    """Content of one file at capture time; None means it did not exist."""
    path: str
    content: Optional[str]

    @property
    def existed(self) -> bool:
        return self.content is not None


@dataclass(frozen=True)
class Checkpoint:
    id: str
    kind: str
    timestamp: float
    snapshots: Mapping[str, FileSnapshot]
    description: str = ""
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "timestamp": self.timestamp,
            "description": self.description,
            "message_id": self.message_id,
            "snapshots": {p: s.content for p, s in self.snapshots.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        snaps = {p: FileSnapshot(p, c) for p, c in (data.get("snapshots") or {}).items()}
        return cls(
            id=data["id"],
            kind=data.get("kind", CHECKPOINT_TOOL_EDIT),
            timestamp=data.get("timestamp", 0.0),
            snapshots=MappingProxyType(snaps),
            description=data.get("description", ""),
            message_id=data.get("message_id"),
        )


@dataclass
class RollbackReport:
    checkpoint_id: str
    restored_files: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class CheckpointManager:
    """Append-only, time-ordered checkpoints for one thread."""

    def __init__(self, backend: Backend, max_checkpoints: Optional[int] = None):
        self.backend = backend
        self.max_checkpoints = max_checkpoints or agent_config.max_checkpoints
        self._checkpoints: List[Checkpoint] = []

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def snapshot_file(self, path: str) -> FileSnapshot:
        """Read the current content of ``path`` (None if it does not exist).

        The read is strict: a file that is not valid UTF-8 raises
        UnicodeDecodeError instead of being captured lossily, so the caller can
        refuse the mutation rather than hold a snapshot that cannot restore it.
        """
        abs_path = self.backend.resolve_path(path)
        return FileSnapshot(abs_path, self.backend.read_file_or_none(abs_path, strict=True))

    def create(
        self,
        kind: str,
        description: str = "",
        snapshots: Union[Mapping[str, FileSnapshot], Iterable[FileSnapshot], None] = None,
        message_id: Optional[str] = None,
    ) -> Checkpoint:
        if kind not in CHECKPOINT_KINDS:
            raise ValueError(f"Unknown checkpoint kind: {kind!r}")
        if snapshots is None:
            snaps: Dict[str, FileSnapshot] = {}
        elif isinstance(snapshots, Mapping):
            snaps = dict(snapshots)
        else:
            snaps = {s.path: s for s in snapshots}

        checkpoint = Checkpoint(
            id=uuid.uuid4().hex,
            kind=kind,
            timestamp=time.time(),
            snapshots=MappingProxyType(snaps),
            description=description[:200],
            message_id=message_id,
        )
        self._checkpoints.append(checkpoint)
        logger.info(f"Checkpoint {checkpoint.id[:8]} created ({kind}, {len(snaps)} files): {checkpoint.description}")

        overflow = len(self._checkpoints) - self.max_checkpoints
        if overflow > 0:
            evicted = self._checkpoints[:overflow]
            self._checkpoints = self._checkpoints[overflow:]
            evicted_ids = ", ".join(c.id[:8] for c in evicted)
            logger.info(f"Evicted {len(evicted)} oldest checkpoint(s): {evicted_ids}")
        return checkpoint

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def list(self) -> List[Checkpoint]:
        return list(self._checkpoints)

    def __len__(self) -> int:
        return len(self._checkpoints)

    def get(self, checkpoint_id: str) -> Checkpoint:
        for cp in self._checkpoints:
            if cp.id == checkpoint_id:
                return cp
        raise CheckpointNotFoundError(f"No checkpoint with id {checkpoint_id!r}")

    def latest(self, kind: Optional[str] = None) -> Optional[Checkpoint]:
        for cp in reversed(self._checkpoints):
            if kind is None or cp.kind == kind:
                return cp
        return None

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _restore(self, checkpoint_id: str, snapshots: Iterable[FileSnapshot]) -> RollbackReport:
        report = RollbackReport(checkpoint_id=checkpoint_id)
        for snap in snapshots:
            try:
                if snap.content is None:
                    if self.backend.file_exists(snap.path):
                        self.backend.remove_file(snap.path)
                else:
                    self.backend.write_file(snap.path, snap.content)
                report.restored_files.append(snap.path)
            except Exception as e:
                logger.warning(f"Failed to restore {snap.path} from checkpoint {checkpoint_id[:8]}: {e}")
                report.errors.append({"path": snap.path, "error": str(e)})
        logger.info(f"Rollback to {checkpoint_id[:8]}: {len(report.restored_files)} restored, "
                    f"{len(report.errors)} failed")
        return report

    def rollback(self, checkpoint_id: str) -> RollbackReport:
        """Restore every file recorded in one checkpoint."""
        checkpoint = self.get(checkpoint_id)
        return self._restore(checkpoint.id, checkpoint.snapshots.values())

    def restore_to(self, checkpoint_id: str) -> RollbackReport:
        """Rewind the workspace to the moment ``checkpoint_id`` was taken.

        Every file touched by that checkpoint or a later one goes back to the
        earliest content recorded for it from that point on.
        """
        checkpoint = self.get(checkpoint_id)
        start = self._checkpoints.index(checkpoint)
        earliest: Dict[str, FileSnapshot] = {}
        for cp in self._checkpoints[start:]:
            for path, snap in cp.snapshots.items():
                earliest.setdefault(path, snap)
        return self._restore(checkpoint.id, earliest.values())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [cp.to_dict() for cp in self._checkpoints]

    def load(self, data: List[Dict[str, Any]]) -> None:
        self._checkpoints = [Checkpoint.from_dict(d) for d in data][-self.max_checkpoints:]
