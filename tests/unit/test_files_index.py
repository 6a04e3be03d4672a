from __future__ import annotations

import os
from pathlib import Path

import pytest

from pkgvault.domain.errors import FilesIndexError
from pkgvault.domain.models import TrackedFile
from pkgvault.services.catalog.files_index import FilesIndexStore


def _record(tmp_path: Path, entry_id: str, repository: str = "GoldHEN") -> TrackedFile:
    return TrackedFile(entry_id=entry_id, repository=repository, kind="patches", path=tmp_path / entry_id)


def test_missing_file_reads_as_empty(tmp_path: Path) -> None:
    store = FilesIndexStore(tmp_path / "files.json")

    assert store.load().files == {}
    assert store.files_for("CUSA00001") == []


def test_track_replaces_same_entry_and_untrack_removes_it(tmp_path: Path) -> None:
    store = FilesIndexStore(tmp_path / "files.json")
    store.track("CUSA00001", _record(tmp_path, "game.xml"))
    store.track("CUSA00001", _record(tmp_path, "game.xml"))
    store.track("CUSA00001", _record(tmp_path, "game.xml", repository="shadPS4"))

    assert len(store.files_for("CUSA00001")) == 2

    removed = store.untrack("CUSA00001", "game.xml", repository="GoldHEN")

    assert [r.repository for r in removed] == ["GoldHEN"]
    assert [r.repository for r in store.files_for("CUSA00001")] == ["shadPS4"]
    assert store.untrack("CUSA00001", "missing.xml") == []


def test_replace_repository_keeps_other_repositories(tmp_path: Path) -> None:
    store = FilesIndexStore(tmp_path / "files.json")
    store.track("CUSA00001", _record(tmp_path, "old.xml"))
    store.track("CUSA00001", _record(tmp_path, "cheat.json", repository="GoldHEN-cheats"))

    store.replace_repository("GoldHEN", {"CUSA00002": [_record(tmp_path, "new.xml")]})

    assert [r.entry_id for r in store.files_for("CUSA00001")] == ["cheat.json"]
    assert [r.entry_id for r in store.files_for("CUSA00002")] == ["new.xml"]


def test_plain_serial_mapping_is_accepted(tmp_path: Path) -> None:
    path = tmp_path / "files.json"
    path.write_text(
        '{"CUSA00001": [{"entry_id": "a.xml", "repository": "GoldHEN", "kind": "patches", "path": "a.xml"}]}',
        encoding="utf-8",
    )

    assert [r.entry_id for r in FilesIndexStore(path).files_for("CUSA00001")] == ["a.xml"]


def test_corrupt_file_raises_and_is_left_alone(tmp_path: Path) -> None:
    path = tmp_path / "files.json"
    path.write_text("{broken", encoding="utf-8")
    store = FilesIndexStore(path)

    with pytest.raises(FilesIndexError):
        store.load()
    with pytest.raises(FilesIndexError):
        store.track("CUSA00001", _record(tmp_path, "game.xml"))

    assert path.read_text(encoding="utf-8") == "{broken"


def test_interrupted_write_keeps_previous_content(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "files.json"
    store = FilesIndexStore(path)
    store.track("CUSA00001", _record(tmp_path, "game.xml"))
    before = path.read_text(encoding="utf-8")

    def fail_fsync(fd: int) -> None:
        raise OSError("simulated crash")

    monkeypatch.setattr(os, "fsync", fail_fsync)
    with pytest.raises(FilesIndexError, match="Failed to open files.json for writing"):
        store.track("CUSA00002", _record(tmp_path, "other.xml"))

    assert path.read_text(encoding="utf-8") == before
    assert [p.name for p in tmp_path.iterdir()] == ["files.json"]
