import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from pkgvault.domain.errors import LedgerReadError, LedgerWriteError
from pkgvault.domain.models import LedgerEntry
from pkgvault.storage.atomic import atomic_write_text
from pkgvault.storage.db_manager import LedgerStore

logger = logging.getLogger(__name__)


class JsonLedgerStore(LedgerStore):
    """One JSON file per installed serial under <data_dir>/ledger/."""

    def __init__(self, data_dir: Path):
        self._ledger_dir = data_dir / "ledger"

    def initialize(self) -> None:
        self._ledger_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, serial: str) -> Path:
        if not serial or "/" in serial or "\\" in serial or serial.startswith("."):
            raise ValueError(f"Invalid serial: {serial!r}")
        return self._ledger_dir / f"{serial}.json"

    def get(self, serial: str) -> Optional[LedgerEntry]:
        path = self._path(serial)
        if not path.exists():
            return None
        return self._read(path)

    def list_all(self) -> List[LedgerEntry]:
        if not self._ledger_dir.exists():
            return []

        entries = []
        for path in sorted(self._ledger_dir.glob("*.json")):
            try:
                entries.append(self._read(path))
            except LedgerReadError as e:
                # Skip unreadable records; get() still reports them.
                logger.warning(f"Skipping ledger record {path.name}: {e}")
        return entries

    def save(self, entry: LedgerEntry) -> None:
        entry.updated_at = datetime.utcnow()
        try:
            atomic_write_text(self._path(entry.serial), entry.model_dump_json(indent=2))
        except OSError as e:
            raise LedgerWriteError(f"Failed to write ledger record for {entry.serial}: {e}", serial=entry.serial) from e

    def delete(self, serial: str) -> None:
        path = self._path(serial)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise LedgerWriteError(f"Failed to remove ledger record for {serial}: {e}", serial=serial) from e

    def _read(self, path: Path) -> LedgerEntry:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise LedgerReadError(f"Unable to open {path.name} for reading: {e}", path=str(path)) from e
        except ValueError as e:
            raise LedgerReadError(f"Failed to parse {path.name}: {e}", path=str(path)) from e

        try:
            return LedgerEntry(**raw)
        except (TypeError, ValidationError) as e:
            raise LedgerReadError(f"Invalid ledger record {path.name}: {e}", path=str(path)) from e
