"""
Archive extraction boundary.

The reconciliation engine only needs a descriptor and the list of files a
package unpacks to. Real PKG/PFS decoding lives outside this project; the
ZipArchiveExtractor below handles packages repacked as zip containers whose
header is stored at sce_sys/param.json.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import List, Protocol

from pydantic import BaseModel, ValidationError

from pkgvault.domain.errors import ExtractionError
from pkgvault.domain.models import ContentKind, PackageDescriptor

logger = logging.getLogger(__name__)

HEADER_PATH = "sce_sys/param.json"

# param.sfo CATEGORY values
CATEGORY_KINDS = {
    "gd": ContentKind.BASE_GAME,
    "gp": ContentKind.UPDATE,
    "ac": ContentKind.DLC,
}


class ExtractionResult(BaseModel):
    descriptor: PackageDescriptor
    staging_dir: Path
    files: List[Path]

    def relative_files(self) -> List[Path]:
        return [f.relative_to(self.staging_dir) for f in self.files]

    def cleanup(self) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)


class ArchiveExtractor(Protocol):
    def extract(self, path: Path) -> ExtractionResult:
        ...


def descriptor_from_header(raw: dict) -> PackageDescriptor:
    """Build a descriptor from param.sfo-style header keys."""
    if not isinstance(raw, dict):
        raise ExtractionError("Package header must be a JSON object")
    category = str(raw.get("CATEGORY", "")).lower()
    kind_name = raw.get("KIND")
    try:
        kind = ContentKind(kind_name) if kind_name else CATEGORY_KINDS[category]
    except (KeyError, ValueError):
        raise ExtractionError(f"Unknown package category: {category or kind_name!r}")

    try:
        return PackageDescriptor(
            serial=raw["TITLE_ID"],
            version=str(raw.get("APP_VER") or raw.get("VERSION") or ""),
            kind=kind,
            target_version=raw.get("TARGET_APP_VER"),
            content_id=raw.get("CONTENT_ID"),
            title=raw.get("TITLE"),
        )
    except KeyError as e:
        raise ExtractionError(f"Package header is missing {e.args[0]}")
    except ValidationError as e:
        raise ExtractionError(f"Invalid package header: {e}")


class ZipArchiveExtractor:
    def __init__(self, staging_root: Path):
        self.staging_root = staging_root

    def extract(self, path: Path) -> ExtractionResult:
        if not path.is_file():
            raise ExtractionError(f"Package file not found: {path}", path=str(path))

        try:
            with zipfile.ZipFile(path, "r") as zf:
                if HEADER_PATH not in zf.namelist():
                    raise ExtractionError(f"{path.name} has no {HEADER_PATH}", path=str(path))
                try:
                    header = json.loads(zf.read(HEADER_PATH).decode("utf-8"))
                except ValueError as e:
                    raise ExtractionError(f"Failed to parse {HEADER_PATH}: {e}", path=str(path)) from e
                descriptor = descriptor_from_header(header)

                staging_dir = self.staging_root / f"{descriptor.serial}-{uuid.uuid4().hex[:8]}"
                staging_dir.mkdir(parents=True, exist_ok=True)
                try:
                    files = self._unpack(zf, staging_dir)
                except Exception:
                    shutil.rmtree(staging_dir, ignore_errors=True)
                    raise
        except zipfile.BadZipFile as e:
            raise ExtractionError(f"Unable to open package {path.name}: {e}", path=str(path)) from e

        logger.info(f"Extracted {len(files)} files from {path.name} ({descriptor.serial} {descriptor.kind.value} {descriptor.version})")
        return ExtractionResult(descriptor=descriptor, staging_dir=staging_dir, files=files)

    def _unpack(self, zf: zipfile.ZipFile, staging_dir: Path) -> List[Path]:
        files = []
        for info in zf.infolist():
            if info.is_dir():
                continue
            name = PurePosixPath(info.filename)
            if name.is_absolute() or ".." in name.parts:
                raise ExtractionError(f"Refusing to extract unsafe path: {info.filename}")
            target = staging_dir.joinpath(*name.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            files.append(target)
        return files
