from __future__ import annotations

import json
import zipfile
from pathlib import Path

import pytest

from pkgvault.domain.errors import ExtractionError
from pkgvault.domain.models import ContentKind
from pkgvault.services.extractor import HEADER_PATH, ZipArchiveExtractor, descriptor_from_header


def _package(path: Path, header: dict, files: dict) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(HEADER_PATH, json.dumps(header))
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def test_header_category_selects_content_kind() -> None:
    assert descriptor_from_header({"TITLE_ID": "CUSA00001", "APP_VER": "01.00", "CATEGORY": "gd"}).kind is ContentKind.BASE_GAME
    assert descriptor_from_header({"TITLE_ID": "CUSA00001", "APP_VER": "01.05", "CATEGORY": "gp"}).kind is ContentKind.UPDATE
    assert descriptor_from_header({"TITLE_ID": "CUSA00001", "VERSION": "01.00", "CATEGORY": "ac"}).kind is ContentKind.DLC
    assert descriptor_from_header({"TITLE_ID": "CUSA00001", "APP_VER": "1.0", "KIND": "patch"}).kind is ContentKind.PATCH


@pytest.mark.parametrize(
    "header",
    [
        {"TITLE_ID": "CUSA00001", "APP_VER": "01.00", "CATEGORY": "zz"},
        {"APP_VER": "01.00", "CATEGORY": "gd"},
        ["not", "an", "object"],
    ],
)
def test_bad_headers_raise_extraction_error(header) -> None:
    with pytest.raises(ExtractionError):
        descriptor_from_header(header)


def test_zip_package_is_unpacked_into_staging(tmp_path: Path) -> None:
    header = {
        "TITLE_ID": "CUSA00001",
        "APP_VER": "01.05",
        "CATEGORY": "gp",
        "TARGET_APP_VER": "01.00",
        "TITLE": "Example Game",
    }
    package = _package(tmp_path / "update.pkg", header, {"eboot.bin": "code", "media/a.png": "png"})
    extractor = ZipArchiveExtractor(tmp_path / "staging")

    result = extractor.extract(package)

    assert result.descriptor.serial == "CUSA00001"
    assert result.descriptor.target_version == "01.00"
    assert result.staging_dir.parent == tmp_path / "staging"
    assert sorted(p.as_posix() for p in result.relative_files()) == ["eboot.bin", "media/a.png", HEADER_PATH]

    result.cleanup()
    assert not result.staging_dir.exists()


def test_unsafe_member_path_is_refused(tmp_path: Path) -> None:
    package = _package(
        tmp_path / "evil.pkg",
        {"TITLE_ID": "CUSA00001", "APP_VER": "01.00", "CATEGORY": "gd"},
        {"../escape.txt": "x"},
    )
    extractor = ZipArchiveExtractor(tmp_path / "staging")

    with pytest.raises(ExtractionError):
        extractor.extract(package)

    assert not (tmp_path / "escape.txt").exists()
    assert list((tmp_path / "staging").iterdir()) == []


def test_non_zip_file_raises_extraction_error(tmp_path: Path) -> None:
    package = tmp_path / "broken.pkg"
    package.write_bytes(b"\x7fCNT not a zip")

    with pytest.raises(ExtractionError):
        ZipArchiveExtractor(tmp_path / "staging").extract(package)
