"""
Install, upgrade, downgrade and delete decisions for installed titles.

The engine compares an incoming package against the install ledger and
either performs the install or raises a ConflictError describing why the
caller has to decide (confirm an overwrite, force a downgrade, accept an
incompatible update). Conflicts are never retried here; the caller calls
again with the matching flag.

Files are always moved into place before the ledger is written, so the
ledger never lists files that are not on disk. Operations on the same
serial are serialized with a per-serial lock.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from pkgvault.domain.errors import (
    AlreadyInstalled,
    BaseGameNotInstalled,
    ExtractionError,
    GameAlreadyRunning,
    IncompatiblePatch,
    NothingToDelete,
    OlderVersionRejected,
    VersionParseError,
)
from pkgvault.domain.models import (
    ContentKind,
    InstalledTitle,
    InstallResult,
    InstallStatus,
    LauncherSettings,
    LedgerEntry,
    PackageDescriptor,
)
from pkgvault.domain.versions import Ordering, compare_versions
from pkgvault.services.extractor import ArchiveExtractor
from pkgvault.services.patching import SessionRegistry
from pkgvault.storage.db_manager import LedgerStore

logger = logging.getLogger(__name__)

UPDATE_FOLDER_SUFFIX = "-UPDATE"


def _move_files(staging_dir: Path, files: Sequence[Path], dest: Path) -> List[str]:
    """Move extracted files under dest, keeping their layout. Returns relative paths."""
    moved = []
    for file_path in files:
        try:
            rel = Path(file_path).relative_to(staging_dir)
        except ValueError:
            raise ExtractionError(f"Extracted file {file_path} is outside the staging directory")
        target = dest / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            target.unlink()
        shutil.move(str(file_path), str(target))
        moved.append(rel.as_posix())
    dest.mkdir(parents=True, exist_ok=True)
    return sorted(moved)


def _has_content(path: Optional[Path]) -> bool:
    return path is not None and path.is_dir() and any(path.iterdir())


class ReconciliationEngine:
    def __init__(
        self,
        store: LedgerStore,
        settings: LauncherSettings,
        extractor: Optional[ArchiveExtractor] = None,
        sessions: Optional[SessionRegistry] = None,
    ):
        self.store = store
        self.settings = settings
        self.extractor = extractor
        self.sessions = sessions
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ========================================================================
    # Helpers
    # ========================================================================

    @contextmanager
    def _serial_lock(self, serial: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(serial, threading.Lock())
        with lock:
            if self.sessions is not None and self.sessions.is_running(serial):
                raise GameAlreadyRunning(serial)
            yield

    def _directory(self, name: str) -> Path:
        value = getattr(self.settings, name)
        if value is None:
            raise ValueError(f"Setting '{name}' is not configured")
        return Path(value)

    def _compare(self, package_version: str, installed_version: str) -> Optional[Ordering]:
        """
        Compare two versions. Unparsable versions with identical text are
        EQUAL. None means the versions differ, at least one side could not
        be parsed and the unknown_version_policy allows the install anyway.
        """
        try:
            return compare_versions(package_version, installed_version)
        except VersionParseError:
            if package_version.strip() == installed_version.strip():
                return Ordering.EQUAL
            if self.settings.unknown_version_policy == "reject":
                raise
            logger.warning(
                f"Cannot compare versions {package_version!r} and {installed_version!r}, treating as unknown"
            )
            return None

    def _install_tree(
        self,
        dest: Path,
        staging_dir: Path,
        files: Sequence[Path],
        commit: Callable[[List[str]], None],
    ) -> List[str]:
        """
        Replace dest with the staged files and run commit (the ledger write).
        The previous tree is kept aside until commit succeeds and restored if
        anything fails.
        """
        backup: Optional[Path] = None
        if dest.exists():
            backup = dest.with_name(f".{dest.name}.old-{uuid.uuid4().hex[:8]}")
            dest.rename(backup)
        try:
            moved = _move_files(staging_dir, files, dest)
            commit(moved)
        except BaseException:
            if dest.exists():
                shutil.rmtree(dest, ignore_errors=True)
            if backup is not None:
                backup.rename(dest)
            raise
        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)
        return moved

    def _merge_tree(
        self,
        dest: Path,
        staging_dir: Path,
        files: Sequence[Path],
        commit: Callable[[List[str]], None],
    ) -> List[str]:
        """
        Move the staged files into an existing dest and run commit. Files
        that get overwritten are kept aside until commit succeeds; on failure
        new files are removed and the overwritten ones put back.
        """
        backup = dest.with_name(f".{dest.name}.merge-{uuid.uuid4().hex[:8]}")
        created: List[Path] = []
        replaced: List[Path] = []
        moved = []
        try:
            for file_path in files:
                try:
                    rel = Path(file_path).relative_to(staging_dir)
                except ValueError:
                    raise ExtractionError(f"Extracted file {file_path} is outside the staging directory")
                target = dest / rel
                if target.exists():
                    saved = backup / rel
                    saved.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(target), str(saved))
                    replaced.append(rel)
                else:
                    created.append(rel)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(file_path), str(target))
                moved.append(rel.as_posix())
            moved.sort()
            commit(moved)
        except BaseException:
            for rel in created:
                (dest / rel).unlink(missing_ok=True)
            for rel in replaced:
                (dest / rel).unlink(missing_ok=True)
                shutil.move(str(backup / rel), str(dest / rel))
            shutil.rmtree(backup, ignore_errors=True)
            raise
        shutil.rmtree(backup, ignore_errors=True)
        return moved

    # ========================================================================
    # Queries
    # ========================================================================

    def get_title(self, serial: str) -> Optional[InstalledTitle]:
        entry = self.store.get(serial)
        return entry.to_title() if entry else None

    def list_titles(self) -> List[InstalledTitle]:
        return [entry.to_title() for entry in self.store.list_all()]

    # ========================================================================
    # Install
    # ========================================================================

    def install_package(
        self,
        package_path: Path,
        *,
        confirm_overwrite: bool = False,
        force: bool = False,
        confirm_incompatible: bool = False,
    ) -> InstallResult:
        """Extract a package file and install it."""
        if self.extractor is None:
            raise ValueError("No archive extractor configured")

        extraction = self.extractor.extract(package_path)
        try:
            result = self.install(
                extraction.descriptor,
                extraction.staging_dir,
                extraction.files,
                confirm_overwrite=confirm_overwrite,
                force=force,
                confirm_incompatible=confirm_incompatible,
            )
        finally:
            extraction.cleanup()

        if self.settings.delete_pkg_on_install:
            try:
                package_path.unlink()
            except OSError as e:
                logger.warning(f"Installed {package_path.name} but could not delete it: {e}")
        return result

    def install(
        self,
        descriptor: PackageDescriptor,
        staging_dir: Path,
        files: Sequence[Path],
        *,
        confirm_overwrite: bool = False,
        force: bool = False,
        confirm_incompatible: bool = False,
    ) -> InstallResult:
        """
        Reconcile a package against the ledger and install it.

        Args:
            descriptor: Package identity read from the archive header.
            staging_dir: Directory the package was extracted into.
            files: Extracted files, all located under staging_dir.
            confirm_overwrite: Replace an install of the same version.
            force: Allow installing an older version over a newer one.
            confirm_incompatible: Install an update whose target version does
                not match the installed game.

        Raises:
            AlreadyInstalled, OlderVersionRejected, IncompatiblePatch,
            BaseGameNotInstalled: the caller has to decide and call again.
        """
        with self._serial_lock(descriptor.serial):
            entry = self.store.get(descriptor.serial)

            if descriptor.kind is ContentKind.BASE_GAME:
                return self._install_base(descriptor, entry, staging_dir, files, confirm_overwrite, force)

            if entry is None:
                raise BaseGameNotInstalled(descriptor.serial, descriptor.kind.value)

            if descriptor.kind.is_update:
                return self._install_update(
                    descriptor, entry, staging_dir, files, confirm_overwrite, force, confirm_incompatible
                )
            return self._install_dlc(descriptor, entry, staging_dir, files, confirm_overwrite)

    def _install_base(
        self,
        descriptor: PackageDescriptor,
        entry: Optional[LedgerEntry],
        staging_dir: Path,
        files: Sequence[Path],
        confirm_overwrite: bool,
        force: bool,
    ) -> InstallResult:
        serial = descriptor.serial

        if entry is None:
            root = self._directory("games_dir") / serial
            if _has_content(root) and not confirm_overwrite:
                # Files on disk without a ledger record
                raise AlreadyInstalled(serial, version=None)
            status = InstallStatus.INSTALLED if not _has_content(root) else InstallStatus.OVERWRITTEN
            entry = LedgerEntry(serial=serial, title=descriptor.title, base_version=descriptor.version, install_root=root)
        else:
            root = entry.install_root
            order = self._compare(descriptor.version, entry.base_version)
            if order is Ordering.EQUAL and not confirm_overwrite:
                raise AlreadyInstalled(serial, version=entry.base_version)
            if order is Ordering.LESS and not force:
                raise OlderVersionRejected(serial, descriptor.version, entry.base_version)
            status = InstallStatus.UPGRADED if order is Ordering.GREATER else InstallStatus.OVERWRITTEN

        def commit(moved: List[str]) -> None:
            entry.base_version = descriptor.version
            entry.title = descriptor.title or entry.title
            entry.base_files = moved
            if entry.update_path is None and entry.update_version is not None:
                # A merged update went away with the old install root
                entry.update_version = None
                entry.update_files = []
            self.store.save(entry)

        self._install_tree(root, staging_dir, files, commit)
        logger.info(f"Game {serial} {descriptor.version} {status.value} at {root}")
        return InstallResult(status=status, serial=serial, version=descriptor.version, path=root, title=entry.to_title())

    def _install_update(
        self,
        descriptor: PackageDescriptor,
        entry: LedgerEntry,
        staging_dir: Path,
        files: Sequence[Path],
        confirm_overwrite: bool,
        force: bool,
        confirm_incompatible: bool,
    ) -> InstallResult:
        serial = descriptor.serial

        if descriptor.target_version:
            order = self._compare(descriptor.target_version, entry.base_version)
            if order is not None and order is not Ordering.EQUAL and not confirm_incompatible:
                raise IncompatiblePatch(serial, entry.base_version, descriptor.target_version)

        if entry.update_version:
            order = self._compare(descriptor.version, entry.update_version)
            if order is Ordering.EQUAL and not confirm_overwrite:
                raise AlreadyInstalled(serial, version=entry.update_version)
            if order is Ordering.LESS and not force:
                raise OlderVersionRejected(serial, descriptor.version, entry.update_version)

        previous_path = entry.update_path

        if self.settings.separate_update_folder:
            dest = self._directory("games_dir") / f"{serial}{UPDATE_FOLDER_SUFFIX}"

            def commit(moved: List[str]) -> None:
                entry.update_version = descriptor.version
                entry.update_path = dest
                entry.update_files = moved
                self.store.save(entry)

            self._install_tree(dest, staging_dir, files, commit)
        else:
            dest = entry.install_root

            def commit(moved: List[str]) -> None:
                entry.update_version = descriptor.version
                entry.update_path = None
                entry.update_files = moved
                self.store.save(entry)

            self._merge_tree(dest, staging_dir, files, commit)

        if previous_path is not None and previous_path != entry.update_path and previous_path.exists():
            shutil.rmtree(previous_path, ignore_errors=True)

        logger.info(f"Update {descriptor.version} installed for {serial} at {dest}")
        return InstallResult(
            status=InstallStatus.UPDATE_INSTALLED,
            serial=serial,
            version=descriptor.version,
            path=dest,
            title=entry.to_title(),
        )

    def _install_dlc(
        self,
        descriptor: PackageDescriptor,
        entry: LedgerEntry,
        staging_dir: Path,
        files: Sequence[Path],
        confirm_overwrite: bool,
    ) -> InstallResult:
        serial = descriptor.serial
        dlc_id = descriptor.content_id
        if not dlc_id:
            raise ExtractionError(f"DLC package for {serial} has no content id")

        if dlc_id in entry.dlc_ids and not confirm_overwrite:
            raise AlreadyInstalled(serial, dlc_id=dlc_id)

        dest = self._directory("addons_dir") / serial / dlc_id

        def commit(moved: List[str]) -> None:
            if dlc_id not in entry.dlc_ids:
                entry.dlc_ids.append(dlc_id)
            entry.dlc_files[dlc_id] = moved
            entry.dlc_paths[dlc_id] = dest
            self.store.save(entry)

        self._install_tree(dest, staging_dir, files, commit)
        logger.info(f"DLC {dlc_id} installed for {serial} at {dest}")
        return InstallResult(
            status=InstallStatus.DLC_INSTALLED,
            serial=serial,
            version=descriptor.version,
            path=dest,
            title=entry.to_title(),
        )

    # ========================================================================
    # Delete
    # ========================================================================

    def delete_update(self, serial: str) -> InstalledTitle:
        with self._serial_lock(serial):
            entry = self.store.get(serial)
            if entry is None or entry.update_path is None or not entry.update_path.exists():
                raise NothingToDelete(serial, "update")

            shutil.rmtree(entry.update_path)
            entry.update_path = None
            entry.update_version = None
            entry.update_files = []
            self.store.save(entry)
            logger.info(f"Deleted update for {serial}")
            return entry.to_title()

    def delete_dlc(self, serial: str, dlc_id: Optional[str] = None) -> InstalledTitle:
        """Delete one DLC, or every DLC of the title when dlc_id is None."""
        with self._serial_lock(serial):
            entry = self.store.get(serial)
            if entry is None or not entry.dlc_ids:
                raise NothingToDelete(serial, "DLC")
            if dlc_id is not None and dlc_id not in entry.dlc_ids:
                raise NothingToDelete(serial, f"DLC {dlc_id}")

            targets = [dlc_id] if dlc_id is not None else list(entry.dlc_ids)
            addons_dir = self._directory("addons_dir")
            for target in targets:
                path = entry.dlc_paths.get(target) or addons_dir / serial / target
                if path.exists():
                    shutil.rmtree(path)
                entry.dlc_ids.remove(target)
                entry.dlc_files.pop(target, None)
                entry.dlc_paths.pop(target, None)

            serial_dir = addons_dir / serial
            if serial_dir.is_dir() and not any(serial_dir.iterdir()):
                serial_dir.rmdir()

            self.store.save(entry)
            logger.info(f"Deleted DLC {', '.join(targets)} for {serial}")
            return entry.to_title()

    def delete_save_data(self, serial: str) -> None:
        with self._serial_lock(serial):
            path = self._directory("save_data_dir") / serial
            if not _has_content(path):
                raise NothingToDelete(serial, "save data")
            shutil.rmtree(path)
            logger.info(f"Deleted save data for {serial}")

    def delete_game(self, serial: str) -> None:
        """Full uninstall: game, update and DLC. Save data is kept."""
        with self._serial_lock(serial):
            entry = self.store.get(serial)
            if entry is None:
                raise NothingToDelete(serial, "game")

            paths = [entry.install_root, entry.update_path, *entry.dlc_paths.values()]
            for path in paths:
                if path is not None and path.exists():
                    shutil.rmtree(path)

            self.store.delete(serial)
            logger.info(f"Uninstalled {serial}")
