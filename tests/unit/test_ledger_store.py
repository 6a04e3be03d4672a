from __future__ import annotations

import json
from pathlib import Path

import pytest

from pkgvault.domain.errors import LedgerReadError
from pkgvault.domain.models import LedgerEntry
from pkgvault.storage.json_db_manager import JsonLedgerStore


def _store(tmp_path: Path) -> JsonLedgerStore:
    store = JsonLedgerStore(tmp_path)
    store.initialize()
    return store


def test_saved_entry_reads_back(tmp_path: Path) -> None:
    store = _store(tmp_path)
    entry = LedgerEntry(serial="CUSA00001", base_version="01.00", install_root=tmp_path / "games" / "CUSA00001")
    entry.base_files = ["eboot.bin"]

    store.save(entry)
    loaded = store.get("CUSA00001")

    assert loaded is not None
    assert loaded.base_version == "01.00"
    assert loaded.base_files == ["eboot.bin"]
    assert loaded.install_root == tmp_path / "games" / "CUSA00001"
    assert [e.serial for e in store.list_all()] == ["CUSA00001"]


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = {
        "serial": "CUSA00002",
        "base_version": "1.05",
        "install_root": str(tmp_path / "games" / "CUSA00002"),
        "added_by_a_newer_build": {"anything": True},
    }
    (tmp_path / "ledger" / "CUSA00002.json").write_text(json.dumps(record), encoding="utf-8")

    entry = store.get("CUSA00002")

    assert entry is not None
    assert entry.base_version == "1.05"


def test_corrupt_record_raises_on_get_and_is_skipped_by_list(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(LedgerEntry(serial="CUSA00001", base_version="01.00", install_root=tmp_path / "a"))
    (tmp_path / "ledger" / "CUSA00003.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(LedgerReadError):
        store.get("CUSA00003")
    assert [e.serial for e in store.list_all()] == ["CUSA00001"]


def test_missing_serial_returns_none_and_delete_removes_record(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.get("CUSA09999") is None

    store.save(LedgerEntry(serial="CUSA00001", base_version="01.00", install_root=tmp_path / "a"))
    store.delete("CUSA00001")

    assert store.get("CUSA00001") is None
    assert not (tmp_path / "ledger" / "CUSA00001.json").exists()


def test_path_like_serial_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValueError):
        store.get("../settings")
