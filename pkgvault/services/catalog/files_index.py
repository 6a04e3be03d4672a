from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from pkgvault.domain.errors import FilesIndexError
from pkgvault.domain.models import FilesIndex, TrackedFile
from pkgvault.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)


class FilesIndexStore:
    """
    files.json: serial -> catalog files kept on disk.

    A missing file reads as an empty index. A file that exists but cannot be
    parsed raises FilesIndexError and is never overwritten by a later write.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()

    def load(self) -> FilesIndex:
        with self._lock:
            if not self.path.exists():
                return FilesIndex()
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except OSError as e:
                raise FilesIndexError(f"Unable to open files.json for reading: {e}", path=str(self.path)) from e
            except ValueError as e:
                raise FilesIndexError(f"Failed to parse files.json: {e}", path=str(self.path)) from e

            if not isinstance(raw, dict):
                raise FilesIndexError("Invalid files.json: expected a JSON object", path=str(self.path))
            try:
                # Plain serial -> files mappings are accepted as well
                return FilesIndex(**raw) if "files" in raw else FilesIndex(files=raw)
            except (TypeError, ValidationError) as e:
                raise FilesIndexError(f"Invalid files.json: {e}", path=str(self.path)) from e

    def save(self, index: FilesIndex) -> None:
        with self._lock:
            try:
                atomic_write_text(self.path, index.model_dump_json(indent=2))
            except OSError as e:
                raise FilesIndexError(f"Failed to open files.json for writing: {e}", path=str(self.path)) from e

    def files_for(self, serial: str) -> List[TrackedFile]:
        return list(self.load().files.get(serial, []))

    def track(self, serial: str, tracked: TrackedFile) -> None:
        """Add or replace the record for (repository, entry_id) under serial."""
        with self._lock:
            index = self.load()
            files = [
                f
                for f in index.files.get(serial, [])
                if not (f.entry_id == tracked.entry_id and f.repository == tracked.repository)
            ]
            files.append(tracked)
            index.files[serial] = files
            self.save(index)

    def untrack(self, serial: str, entry_id: str, repository: Optional[str] = None) -> List[TrackedFile]:
        """Remove matching records and return them."""
        with self._lock:
            index = self.load()
            removed = []
            kept = []
            for f in index.files.get(serial, []):
                if f.entry_id == entry_id and (repository is None or f.repository == repository):
                    removed.append(f)
                else:
                    kept.append(f)
            if not removed:
                return []
            if kept:
                index.files[serial] = kept
            else:
                index.files.pop(serial, None)
            self.save(index)
            return removed

    def replace_repository(self, repository: str, tracked: Dict[str, List[TrackedFile]]) -> None:
        """Swap every record of one repository for a new set in a single write."""
        with self._lock:
            index = self.load()
            files: Dict[str, List[TrackedFile]] = {}
            for serial, items in index.files.items():
                kept = [f for f in items if f.repository != repository]
                if kept:
                    files[serial] = kept
            for serial, items in tracked.items():
                files.setdefault(serial, []).extend(items)
            self.save(FilesIndex(files=files))
            logger.debug(f"files.json now tracks {sum(len(v) for v in files.values())} files")
