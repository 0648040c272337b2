from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from autopilot.errors import SnapshotError
from autopilot.models import Snapshot

# file content is kept as str; surrogateescape lets non-UTF-8 bytes round-trip
ENCODING = "utf-8"
ERRORS = "surrogateescape"

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Pre-mutation copies of files, keyed by snapshot id.

    With ``persist`` enabled, contents live in ``<directory>/objects/<sha256>``
    and metadata in ``<directory>/index.json`` so snapshots outlive the
    process. Identical contents are stored once.
    """

    def __init__(
        self,
        directory: Path | str | None = None,
        *,
        persist: bool = True,
        base_directory: Path | str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.base_directory = Path(base_directory or Path.cwd()).resolve()
        self.persist = persist and directory is not None
        self.directory = self._resolve(directory) if directory is not None else None
        self.event_hook = event_hook
        self._entries: dict[str, dict[str, Any]] = {}
        self._contents: dict[str, str] = {}
        if self.persist:
            self._load_index()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _resolve(self, path: Path | str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.base_directory / candidate
        return candidate.resolve()

    @property
    def index_file(self) -> Path:
        assert self.directory is not None
        return self.directory / "index.json"

    @property
    def objects_dir(self) -> Path:
        assert self.directory is not None
        return self.directory / "objects"

    def _load_index(self) -> None:
        if not self.index_file.exists():
            return
        try:
            payload = json.loads(self.index_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Snapshot index %s is corrupt; starting empty", self.index_file)
            return
        if not isinstance(payload, list):
            return
        for entry in payload:
            if isinstance(entry, dict) and isinstance(entry.get("id"), str):
                self._entries[entry["id"]] = entry

    def _write_index(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)  # type: ignore[union-attr]
        serialized = json.dumps(list(self._entries.values()), ensure_ascii=False, indent=2)
        self.index_file.write_text(serialized + "\n", encoding="utf-8")

    def _store_object(self, digest: str, data: bytes) -> None:
        if not self.persist:
            return
        target = self.objects_dir / digest
        if target.exists():
            return
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def _load_content(self, entry: dict[str, Any]) -> str:
        digest = entry["hash"]
        if digest in self._contents:
            return self._contents[digest]
        if not self.persist:
            raise SnapshotError(f"Content of snapshot {entry['id']} is not available")
        try:
            data = (self.objects_dir / digest).read_bytes()
        except FileNotFoundError as exc:
            raise SnapshotError(f"Snapshot object {digest} is missing") from exc
        if hashlib.sha256(data).hexdigest() != digest:
            raise SnapshotError(f"Snapshot object {digest} is corrupt")
        content = data.decode(ENCODING, errors=ERRORS)
        self._contents[digest] = content
        return content

    def _to_snapshot(self, entry: dict[str, Any]) -> Snapshot:
        return Snapshot(
            id=entry["id"],
            path=entry["path"],
            content=self._load_content(entry),
            hash=entry["hash"],
            created_at=datetime.fromisoformat(entry["created_at"]),
            reason=entry.get("reason"),
        )

    def snapshot(self, path: Path | str, reason: str | None = None) -> Snapshot | None:
        """Capture the current content of ``path``; ``None`` when it does not exist."""
        target = self._resolve(path)
        if not target.exists():
            return None
        if not target.is_file():
            logger.warning("Not snapshotting %s: not a regular file", target)
            return None
        try:
            data = target.read_bytes()
        except OSError as exc:
            raise SnapshotError(f"Cannot read {target}: {exc}") from exc

        digest = hashlib.sha256(data).hexdigest()
        content = data.decode(ENCODING, errors=ERRORS)
        self._store_object(digest, data)
        self._contents[digest] = content
        snapshot = Snapshot(
            id=f"snap-{uuid4().hex[:12]}",
            path=str(target),
            content=content,
            hash=digest,
            reason=reason,
        )
        self._entries[snapshot.id] = {
            "id": snapshot.id,
            "path": snapshot.path,
            "hash": digest,
            "created_at": snapshot.created_at.isoformat(),
            "reason": reason,
        }
        if self.persist:
            self._write_index()
        self._emit({"event": "snapshot_created", "snapshot_id": snapshot.id, "path": snapshot.path})
        return snapshot

    def rollback(self, snapshot_id: str) -> Snapshot:
        entry = self._entries.get(snapshot_id)
        if entry is None:
            raise SnapshotError(f"Unknown snapshot: {snapshot_id}")
        snapshot = self._to_snapshot(entry)
        target = Path(snapshot.path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(snapshot.content.encode(ENCODING, errors=ERRORS))
        except OSError as exc:
            raise SnapshotError(f"Cannot restore {target}: {exc}") from exc
        self._emit(
            {"event": "snapshot_restored", "snapshot_id": snapshot_id, "path": snapshot.path}
        )
        logger.info("Restored %s from snapshot %s", snapshot.path, snapshot_id)
        return snapshot

    def get(self, snapshot_id: str) -> Snapshot | None:
        entry = self._entries.get(snapshot_id)
        return self._to_snapshot(entry) if entry is not None else None

    def list(self) -> list[Snapshot]:
        return [self._to_snapshot(entry) for entry in self._entries.values()]

    def latest_for(self, path: Path | str) -> Snapshot | None:
        target = str(self._resolve(path))
        matches = [entry for entry in self._entries.values() if entry["path"] == target]
        if not matches:
            return None
        return self._to_snapshot(matches[-1])
