"""
Pydantic models for the library manager.

This module defines all data models used throughout the application, including:
- Launcher settings and catalog repository sources
- Package descriptors read from archive headers
- Installed titles and their persisted ledger records
- Catalog entries, the per-repository catalog index and files.json
- Patch definitions consumed by the patch applicator

Persisted models ignore unknown fields so older builds can read records
written by newer ones without a migration step.
"""

from __future__ import annotations

import enum
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


RepositoryKind = Literal["patches", "cheats"]


class RepositorySource(BaseModel):
    """
    A remote repository of patch or cheat definitions.

    The listing URL returns either a JSON listing or an HTML page with the
    listing embedded as JSON. Individual files are downloaded from
    raw_base_url + "/" + file name.
    """

    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="Short repository name, used as a directory and index key.")
    kind: RepositoryKind = Field(description="'patches' (bulk refresh) or 'cheats' (per-game download).")
    listing_url: str = Field(description="URL of the repository file listing.")
    raw_base_url: str = Field(description="Base URL that individual files are downloaded from.")


def _default_repositories() -> List[RepositorySource]:
    return [
        RepositorySource(
            name="GoldHEN",
            kind="patches",
            listing_url="https://github.com/illusion0001/PS4-PS5-Game-Patch/tree/main/patches/xml",
            raw_base_url="https://raw.githubusercontent.com/illusion0001/PS4-PS5-Game-Patch/main/patches/xml",
        ),
        RepositorySource(
            name="shadPS4",
            kind="patches",
            listing_url="https://github.com/shadps4-emu/ps4_cheats/tree/main/PATCHES",
            raw_base_url="https://raw.githubusercontent.com/shadps4-emu/ps4_cheats/main/PATCHES",
        ),
        RepositorySource(
            name="GoldHEN-cheats",
            kind="cheats",
            listing_url="https://github.com/GoldHEN/GoldHEN_Cheat_Repository/tree/main/json",
            raw_base_url="https://raw.githubusercontent.com/GoldHEN/GoldHEN_Cheat_Repository/main/json",
        ),
        RepositorySource(
            name="shadPS4-cheats",
            kind="cheats",
            listing_url="https://github.com/shadps4-emu/ps4_cheats/tree/main/CHEATS",
            raw_base_url="https://raw.githubusercontent.com/shadps4-emu/ps4_cheats/main/CHEATS",
        ),
    ]


class LauncherSettings(BaseModel):
    """
    Top-level configuration.

    Persisted at: <DATA_DIR>/settings.json
    Directory fields left empty are filled in relative to the data directory
    when the settings are loaded.
    """

    model_config = ConfigDict(extra="ignore")

    games_dir: Optional[Path] = Field(
        default=None,
        description="Directory games are installed into (<games_dir>/<serial>).",
    )
    addons_dir: Optional[Path] = Field(
        default=None,
        description="Directory DLC is installed into (<addons_dir>/<serial>/<dlc id>).",
    )
    save_data_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding save data (<save_data_dir>/<serial>).",
    )
    separate_update_folder: bool = Field(
        default=False,
        description="Install updates into <games_dir>/<serial>-UPDATE instead of merging them into the game.",
    )
    delete_pkg_on_install: bool = Field(
        default=False,
        description="Delete the source package file after a successful install.",
    )
    unknown_version_policy: Literal["allow", "reject"] = Field(
        default="allow",
        description="What to do when a version cannot be parsed: 'allow' overwrites, 'reject' fails.",
    )
    fetch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for a single repository fetch.",
    )
    refresh_catalog_on_startup: bool = Field(
        default=False,
        description="Refresh all patch repositories in the background on startup.",
    )
    log_level: str = Field(default="INFO")
    repositories: List[RepositorySource] = Field(default_factory=_default_repositories)

    def get_repository(self, name: str) -> Optional[RepositorySource]:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        return None


# ---------------------------------------------------------------------------
# Packages and installed titles
# ---------------------------------------------------------------------------


class ContentKind(str, enum.Enum):
    BASE_GAME = "base_game"
    UPDATE = "update"
    DLC = "dlc"
    PATCH = "patch"

    @property
    def is_update(self) -> bool:
        return self in (ContentKind.UPDATE, ContentKind.PATCH)


class PackageDescriptor(BaseModel):
    """
    Identity of a package, read from its archive header. Immutable.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    serial: str = Field(description="Title identifier, e.g. 'CUSA00001'.")
    version: str = Field(description="Package version, e.g. '01.02'.")
    kind: ContentKind
    target_version: Optional[str] = Field(
        default=None,
        description="Base game version an update/patch applies to.",
    )
    content_id: Optional[str] = Field(
        default=None,
        description="Content identifier. For DLC this is the DLC id recorded in the ledger.",
    )
    title: Optional[str] = None


class InstalledTitle(BaseModel):
    """What is installed for one serial, and where."""

    model_config = ConfigDict(extra="ignore")

    serial: str
    title: Optional[str] = None
    base_version: str
    install_root: Path
    dlc_ids: List[str] = Field(default_factory=list)
    update_version: Optional[str] = None
    update_path: Optional[Path] = Field(
        default=None,
        description="Separate update folder, None when the update was merged into install_root.",
    )

    @property
    def game_version(self) -> str:
        """Version the game runs as: the update version once one is installed."""
        return self.update_version or self.base_version


class LedgerEntry(InstalledTitle):
    """
    Persisted ledger record for one serial.

    Persisted at: <DATA_DIR>/ledger/<serial>.json
    File lists are relative to the directory each part was installed into.
    """

    base_files: List[str] = Field(default_factory=list)
    update_files: List[str] = Field(default_factory=list)
    dlc_files: Dict[str, List[str]] = Field(default_factory=dict)
    dlc_paths: Dict[str, Path] = Field(default_factory=dict)
    installed_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_title(self) -> InstalledTitle:
        return InstalledTitle(**self.model_dump(include=set(InstalledTitle.model_fields)))


class InstallStatus(str, enum.Enum):
    INSTALLED = "installed"
    UPGRADED = "upgraded"
    OVERWRITTEN = "overwritten"
    UPDATE_INSTALLED = "update_installed"
    DLC_INSTALLED = "dlc_installed"


class InstallResult(BaseModel):
    status: InstallStatus
    serial: str
    version: str
    path: Path
    title: InstalledTitle


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class CatalogEntry(BaseModel):
    """A single patch or cheat definition offered by a repository."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    repository: str
    entry_id: str = Field(description="File name of the definition inside the repository.")
    kind: RepositoryKind
    serial: str
    version: str = Field(description="Game version the definition applies to.")
    name: str
    author: Optional[str] = None
    note: Optional[str] = None
    local_path: Optional[Path] = None


class CatalogIndex(BaseModel):
    """
    Catalog subset for one repository: serial -> game version -> entries.

    Persisted at: <DATA_DIR>/catalog/index/<repository>.json
    Always replaced as a whole, never edited in place.
    """

    model_config = ConfigDict(extra="ignore")

    repository: str
    kind: RepositoryKind
    built_at: datetime = Field(default_factory=datetime.utcnow)
    entries: Dict[str, Dict[str, List[CatalogEntry]]] = Field(default_factory=dict)

    @classmethod
    def from_entries(cls, repository: str, kind: RepositoryKind, entries: List[CatalogEntry]) -> "CatalogIndex":
        grouped: Dict[str, Dict[str, List[CatalogEntry]]] = {}
        for entry in entries:
            grouped.setdefault(entry.serial, {}).setdefault(entry.version, []).append(entry)
        return cls(repository=repository, kind=kind, entries=grouped)

    def iter_entries(self) -> Iterator[CatalogEntry]:
        for versions in self.entries.values():
            for items in versions.values():
                yield from items


class IncompatibleVersion(BaseModel):
    """Advisory: definitions exist for the serial, but not for this version."""

    serial: str
    installed_version: str
    available_versions: List[str]

    @property
    def message(self) -> str:
        return (
            f"The game is in version: {self.installed_version}. "
            f"The downloaded patch only works on version: {', '.join(self.available_versions)}. "
            "You may need to update your game."
        )


class TrackedFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entry_id: str
    repository: str
    kind: RepositoryKind
    path: Path


class FilesIndex(BaseModel):
    """
    Locally retained catalog files.

    Persisted at: <DATA_DIR>/catalog/files.json
    """

    model_config = ConfigDict(extra="ignore")

    files: Dict[str, List[TrackedFile]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Patch definitions
# ---------------------------------------------------------------------------


class PatchEdit(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: int
    value: bytes
    original: Optional[bytes] = None
    edit_type: str = "bytes"


class PatchMod(BaseModel):
    """A named, individually switchable group of edits."""

    name: str
    edits: List[PatchEdit] = Field(default_factory=list)


class PatchDefinition(BaseModel):
    serial: Optional[str] = None
    app_version: Optional[str] = None
    name: str
    author: Optional[str] = None
    mods: List[PatchMod] = Field(default_factory=list)

    def edits(self) -> List[PatchEdit]:
        return [edit for mod in self.mods for edit in mod.edits]
