"""
Thread persistence for Bedrock Orchestrator.
Stores each chat thread (messages, tool-call states, checkpoints, compression
stats, handoff) as a JSON file so a workspace can be closed and resumed.
"""

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import app_config
from orchestrator.checkpoints import CheckpointManager
from orchestrator.messages import ChatThread, UserMessage

logger = logging.getLogger(__name__)

RECORD_VERSION = 1


@dataclass
class ThreadRecord:
    """A persisted chat thread plus its checkpoints."""
    thread_id: str = ""
    version: int = RECORD_VERSION
    name: str = "default"
    workspace: str = ""
    model_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    thread: Dict[str, Any] = field(default_factory=dict)
    checkpoints: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: Dict[str, int] = field(default_factory=lambda: {
        "input_tokens": 0,
        "output_tokens": 0,
    })

    @property
    def message_count(self) -> int:
        """Count user messages in the stored thread."""
        return sum(1 for m in self.thread.get("messages", []) if m.get("kind") == "user")

    @property
    def frozen(self) -> bool:
        return bool(self.thread.get("frozen"))

    @classmethod
    def capture(
        cls,
        thread: ChatThread,
        checkpoints: Optional[CheckpointManager] = None,
        name: Optional[str] = None,
        model_id: str = "",
        token_usage: Optional[Dict[str, int]] = None,
    ) -> "ThreadRecord":
        """Snapshot a live thread (and its checkpoints) into a record."""
        if name is None:
            first = next((m for m in thread.messages if isinstance(m, UserMessage)), None)
            name = _auto_name(first.text) if first else "default"
        return cls(
            thread_id=thread.id,
            name=name,
            workspace=_normalize_wd(thread.workspace),
            model_id=model_id,
            thread=thread.to_dict(),
            checkpoints=checkpoints.to_dicts() if checkpoints is not None else [],
            token_usage=dict(token_usage or {"input_tokens": 0, "output_tokens": 0}),
        )

    def to_thread(self) -> ChatThread:
        return ChatThread.from_dict(self.thread)

    def restore_checkpoints(self, manager: CheckpointManager) -> CheckpointManager:
        manager.load(self.checkpoints)
        return manager


def _slugify(name: str) -> str:
    """Turn a thread name into a safe filename component."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "default"


def _normalize_wd(working_directory: str) -> str:
    return os.path.abspath(working_directory)


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a workspace path."""
    return hashlib.sha256(_normalize_wd(working_directory).encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _auto_name(first_task: str) -> str:
    """Generate a thread name from the first user message."""
    words = first_task.strip().split()[:6]
    name = " ".join(words)
    if len(first_task.strip().split()) > 6:
        name += "..."
    return name or "default"


class ThreadStore:
    """
    Manages thread files on disk, scoped by workspace.

    File layout:  {base_dir}/{workspace_hash}_{thread_id}.json
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or app_config.sessions_dir
        os.makedirs(self.base_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def save(self, record: ThreadRecord) -> str:
        """Save a record to disk. Returns the file path."""
        if not record.thread_id:
            raise ValueError("ThreadRecord has no thread_id")
        record.workspace = _normalize_wd(record.workspace or ".")
        record.updated_at = _now_iso()
        if not record.created_at:
            existing = self.load(record.workspace, record.thread_id)
            record.created_at = existing.created_at if existing else record.updated_at

        path = self._path_for(record.workspace, record.thread_id)
        data = asdict(record)

        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.info(f"Thread saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        return path

    def load(self, workspace: str, thread_id: str) -> Optional[ThreadRecord]:
        """Load a thread by workspace and ID."""
        path = self._path_for(workspace, thread_id)
        if not os.path.exists(path):
            return None
        return self._read_file(path)

    def delete(self, workspace: str, thread_id: str) -> bool:
        """Delete a thread file. Returns True if deleted."""
        path = self._path_for(workspace, thread_id)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Thread deleted: {path}")
            return True
        return False

    def list_threads(self, workspace: str) -> List[ThreadRecord]:
        """List all threads of a workspace, newest first."""
        prefix = _dir_hash(workspace) + "_"
        records: List[ThreadRecord] = []

        for fname in os.listdir(self.base_dir):
            if fname.startswith(prefix) and fname.endswith(".json"):
                rec = self._read_file(os.path.join(self.base_dir, fname))
                if rec:
                    records.append(rec)

        records.sort(key=lambda r: r.updated_at or "", reverse=True)
        return records

    def get_latest(self, workspace: str, include_frozen: bool = False) -> Optional[ThreadRecord]:
        """Most recently updated thread of a workspace (skipping handed-off ones by default)."""
        for rec in self.list_threads(workspace):
            if include_frozen or not rec.frozen:
                return rec
        return None

    def find_by_name(self, workspace: str, name: str) -> Optional[ThreadRecord]:
        """Find a thread by name (case-insensitive)."""
        name_lower = name.lower().strip()
        for rec in self.list_threads(workspace):
            if rec.name.lower().strip() == name_lower or _slugify(rec.name) == _slugify(name):
                return rec
        return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path_for(self, workspace: str, thread_id: str) -> str:
        return os.path.join(self.base_dir, f"{_dir_hash(workspace)}_{_slugify(thread_id)}.json")

    def _read_file(self, path: str) -> Optional[ThreadRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return ThreadRecord(
                thread_id=data.get("thread_id", ""),
                version=data.get("version", 1),
                name=data.get("name", "default"),
                workspace=data.get("workspace", ""),
                model_id=data.get("model_id", ""),
                created_at=data.get("created_at", ""),
                updated_at=data.get("updated_at", ""),
                thread=data.get("thread", {}),
                checkpoints=data.get("checkpoints", []),
                token_usage=data.get("token_usage", {"input_tokens": 0, "output_tokens": 0}),
            )
        except Exception as e:
            logger.warning(f"Failed to read thread {path}: {e}")
            return None
