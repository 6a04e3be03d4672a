"""
Catalog of community patches and cheats.

This service handles:
- Refreshing repositories (bulk for patches, listing-only for cheats)
- Answering which definitions apply to an installed game version
- Downloading cheat files individually and tracking them in files.json
- Loading tracked definitions for the patch applicator

Each repository has its own CatalogIndex. A refresh builds a complete new
index (and, for patches, a complete new directory of files) before anything
becomes visible; readers see either the old index or the new one.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import BaseModel, ValidationError

from pkgvault.domain.errors import (
    CatalogParseError,
    CheatsNotFound,
    NetworkError,
    NotFoundError,
    NothingToDelete,
    PatchParseError,
    PkgVaultError,
)
from pkgvault.domain.models import (
    CatalogEntry,
    CatalogIndex,
    IncompatibleVersion,
    LauncherSettings,
    PatchDefinition,
    RepositorySource,
    TrackedFile,
)
from pkgvault.domain.versions import version_sort_key, versions_match
from pkgvault.services.catalog.fetcher import RepositoryFetcher, write_file
from pkgvault.services.catalog.files_index import FilesIndexStore
from pkgvault.services.catalog.parsing import (
    ListedFile,
    cheat_entry_from_name,
    parse_listing,
    patch_entries_from_xml,
)
from pkgvault.services.patching import load_patch_file, parse_cheat_json
from pkgvault.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

MAX_PARALLEL_DOWNLOADS = 8


class CatalogListing:
    """
    Entries for one serial and installed version.

    Iterating filters the catalog lazily. advisory is set when the serial has
    entries, but none for the installed version.
    """

    def __init__(self, groups: List[List[CatalogEntry]], advisory: Optional[IncompatibleVersion]):
        self._groups = groups
        self.advisory = advisory

    def __iter__(self) -> Iterator[CatalogEntry]:
        for items in self._groups:
            yield from items


class RefreshOutcome(BaseModel):
    repository: str
    ok: bool
    entries: int = 0
    error: Optional[dict] = None


class CatalogService:
    def __init__(
        self,
        catalog_dir: Path,
        settings: LauncherSettings,
        fetcher: Optional[RepositoryFetcher] = None,
        files_index: Optional[FilesIndexStore] = None,
    ):
        self.catalog_dir = catalog_dir
        self.settings = settings
        self.fetcher = fetcher or RepositoryFetcher(timeout=settings.fetch_timeout_seconds)
        self.files_index = files_index or FilesIndexStore(catalog_dir / "files.json")
        self._indexes: Dict[str, CatalogIndex] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    # ========================================================================
    # Index Management
    # ========================================================================

    def _index_path(self, repository: str) -> Path:
        return self.catalog_dir / "index" / f"{repository}.json"

    def initialize(self) -> None:
        """Load persisted indexes for the configured repositories."""
        self.catalog_dir.mkdir(parents=True, exist_ok=True)
        for repo in self.settings.repositories:
            path = self._index_path(repo.name)
            if not path.exists():
                continue
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                self._indexes[repo.name] = CatalogIndex(**raw)
            except (OSError, ValueError, TypeError, ValidationError) as e:
                logger.error(f"Ignoring unreadable catalog index {path}: {e}")

    def get_repository(self, name: str) -> RepositorySource:
        repo = self.settings.get_repository(name)
        if repo is None:
            raise NotFoundError(f"Unknown repository: {name}", repository=name)
        return repo

    def get_index(self, repository: str) -> Optional[CatalogIndex]:
        return self._indexes.get(repository)

    def _commit_index(self, index: CatalogIndex) -> None:
        atomic_write_text(self._index_path(index.repository), index.model_dump_json(indent=2))
        # Single reference swap: readers hold either the old or the new index
        self._indexes[index.repository] = index

    async def _fetch(self, url: str) -> bytes:
        try:
            return await asyncio.wait_for(self.fetcher.fetch(url), timeout=self.settings.fetch_timeout_seconds)
        except asyncio.TimeoutError:
            raise NetworkError(f"Timed out fetching {url}", url=url)

    # ========================================================================
    # Refresh
    # ========================================================================

    async def refresh(self, name: str) -> CatalogIndex:
        """
        Refresh one repository. A request for a repository that is already
        refreshing joins the running refresh instead of starting another.
        """
        repo = self.get_repository(name)
        task = self._inflight.get(name)
        if task is None or task.done():
            task = asyncio.create_task(self._refresh(repo))
            self._inflight[name] = task
            task.add_done_callback(lambda t: self._forget(name, t))
        return await asyncio.shield(task)

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]

    def is_refreshing(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    def cancel_refresh(self, name: str) -> bool:
        task = self._inflight.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Cancelled refresh of {name}")
        return True

    async def refresh_all(self, kind: Optional[str] = "patches") -> List[RefreshOutcome]:
        """
        Refresh every repository of a kind (all kinds when None). A failing
        repository is reported and does not stop the others.
        """
        repos = [r for r in self.settings.repositories if kind is None or r.kind == kind]
        results = await asyncio.gather(*(self.refresh(r.name) for r in repos), return_exceptions=True)

        outcomes = []
        for repo, result in zip(repos, results):
            if isinstance(result, CatalogIndex):
                outcomes.append(RefreshOutcome(repository=repo.name, ok=True, entries=sum(1 for _ in result.iter_entries())))
            elif isinstance(result, PkgVaultError):
                logger.error(f"Refresh of {repo.name} failed: {result.message}")
                outcomes.append(RefreshOutcome(repository=repo.name, ok=False, error=result.to_dict()))
            elif isinstance(result, asyncio.CancelledError):
                outcomes.append(RefreshOutcome(repository=repo.name, ok=False, error={"error": "cancelled"}))
            else:
                logger.error(f"Refresh of {repo.name} failed", exc_info=result)
                outcomes.append(
                    RefreshOutcome(repository=repo.name, ok=False, error={"error": type(result).__name__, "message": str(result)})
                )
        return outcomes

    async def _refresh(self, repo: RepositorySource) -> CatalogIndex:
        logger.info(f"Refreshing {repo.kind} repository {repo.name}")
        listing = parse_listing(repo, await self._fetch(repo.listing_url))

        if repo.kind == "cheats":
            index = self._build_cheat_index(repo, listing)
            self._commit_index(index)
        else:
            index = await self._refresh_patches(repo, listing)

        logger.info(f"Repository {repo.name} refreshed: {sum(1 for _ in index.iter_entries())} entries")
        return index

    def _build_cheat_index(self, repo: RepositorySource, listing: List[ListedFile]) -> CatalogIndex:
        entries = []
        for item in listing:
            entry = cheat_entry_from_name(repo.name, item.name)
            if entry is not None:
                entries.append(entry)
            else:
                logger.debug(f"Skipping {item.name} in {repo.name}")
        return CatalogIndex.from_entries(repo.name, "cheats", entries)

    async def _refresh_patches(self, repo: RepositorySource, listing: List[ListedFile]) -> CatalogIndex:
        """
        Download every patch file, parse all of them, then swap the new
        directory, files.json records and index in together.
        """
        patches_root = self.catalog_dir / "patches"
        final_dir = patches_root / repo.name
        staging_dir = patches_root / f".{repo.name}.staging-{uuid.uuid4().hex[:8]}"
        xml_files = [f for f in listing if f.name.lower().endswith(".xml")]
        semaphore = asyncio.Semaphore(MAX_PARALLEL_DOWNLOADS)

        async def download(item: ListedFile) -> bytes:
            async with semaphore:
                return await self._fetch(item.url)

        try:
            payloads = await asyncio.gather(*(download(f) for f in xml_files))

            entries: List[CatalogEntry] = []
            tracked: Dict[str, List[TrackedFile]] = {}
            for item, data in zip(xml_files, payloads):
                try:
                    text = data.decode("utf-8-sig")
                except UnicodeDecodeError as e:
                    raise CatalogParseError(repo.name, f"{item.name}: {e}")

                local_path = final_dir / item.name
                for entry in patch_entries_from_xml(repo.name, item.name, text):
                    entries.append(entry.model_copy(update={"local_path": local_path}))
                    records = tracked.setdefault(entry.serial, [])
                    if not any(r.entry_id == item.name for r in records):
                        records.append(
                            TrackedFile(entry_id=item.name, repository=repo.name, kind="patches", path=local_path)
                        )
                await write_file(staging_dir / item.name, data)

            index = CatalogIndex.from_entries(repo.name, "patches", entries)
            staging_dir.mkdir(parents=True, exist_ok=True)
            self._commit_patches(repo.name, index, tracked, staging_dir, final_dir)
            return index
        finally:
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)

    def _commit_patches(
        self,
        repository: str,
        index: CatalogIndex,
        tracked: Dict[str, List[TrackedFile]],
        staging_dir: Path,
        final_dir: Path,
    ) -> None:
        """
        Publish files.json records, the patch directory and the index together.
        If any step fails the earlier ones are put back, so all three keep
        describing the previous refresh.
        """
        previous: Dict[str, List[TrackedFile]] = {}
        for serial, items in self.files_index.load().files.items():
            kept = [f for f in items if f.repository == repository]
            if kept:
                previous[serial] = kept

        self.files_index.replace_repository(repository, tracked)
        try:
            backup = self._swap_directory(staging_dir, final_dir)
            try:
                self._commit_index(index)
            except BaseException:
                shutil.rmtree(final_dir, ignore_errors=True)
                if backup is not None:
                    backup.rename(final_dir)
                raise
        except BaseException:
            logger.error(f"Publishing {repository} failed, restoring the previous catalog")
            self.files_index.replace_repository(repository, previous)
            raise

        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)

    @staticmethod
    def _swap_directory(staging_dir: Path, final_dir: Path) -> Optional[Path]:
        """Move staging_dir into place and return where the old directory went."""
        backup = None
        if final_dir.exists():
            backup = final_dir.with_name(f".{final_dir.name}.old-{uuid.uuid4().hex[:8]}")
            final_dir.rename(backup)
        try:
            staging_dir.rename(final_dir)
        except BaseException:
            if backup is not None:
                backup.rename(final_dir)
            raise
        return backup

    # ========================================================================
    # Queries
    # ========================================================================

    def list_for(
        self,
        serial: str,
        installed_version: str,
        kind: Optional[str] = None,
        repository: Optional[str] = None,
    ) -> CatalogListing:
        """
        Entries whose applicability version equals the installed version.
        The installed version is passed in on every call and never cached.
        """
        indexes = [
            idx
            for idx in list(self._indexes.values())
            if (kind is None or idx.kind == kind) and (repository is None or idx.repository == repository)
        ]

        per_version = [(version, items) for idx in indexes for version, items in idx.entries.get(serial, {}).items()]
        matching = [items for version, items in per_version if versions_match(version, installed_version)]

        advisory = None
        if not matching and per_version:
            available = sorted({version for version, _ in per_version}, key=version_sort_key)
            advisory = IncompatibleVersion(
                serial=serial, installed_version=installed_version, available_versions=available
            )

        return CatalogListing(matching, advisory)

    # ========================================================================
    # Cheats and tracked files
    # ========================================================================

    async def download_cheats(self, name: str, serial: str, version: str) -> List[TrackedFile]:
        """
        Download the cheat files one repository offers for a game version
        and track each of them.
        """
        repo = self.get_repository(name)
        if repo.kind != "cheats":
            raise NotFoundError(f"{name} is not a cheat repository", repository=name)

        if self.get_index(name) is None:
            await self.refresh(name)

        entries = list(self.list_for(serial, version, kind="cheats", repository=name))
        if not entries:
            raise CheatsNotFound(name, serial, version)

        tracked = []
        base = repo.raw_base_url.rstrip("/")
        for entry in entries:
            data = await self._fetch(f"{base}/{entry.entry_id}")
            try:
                parse_cheat_json(data.decode("utf-8-sig"))
            except (UnicodeDecodeError, PatchParseError) as e:
                raise CatalogParseError(name, f"{entry.entry_id}: {e}")

            local_path = self.catalog_dir / "cheats" / name / entry.entry_id
            await write_file(local_path, data)
            record = TrackedFile(entry_id=entry.entry_id, repository=name, kind="cheats", path=local_path)
            self.files_index.track(serial, record)
            tracked.append(record)

        logger.info(f"Downloaded {len(tracked)} cheat files for {serial} {version} from {name}")
        return tracked

    def track(self, serial: str, record: TrackedFile) -> TrackedFile:
        if not record.path.exists():
            raise NotFoundError(f"File not found: {record.path}", path=str(record.path))
        self.files_index.track(serial, record)
        return record

    def untrack(self, serial: str, entry_id: str, repository: Optional[str] = None, delete_file: bool = True) -> List[TrackedFile]:
        removed = self.files_index.untrack(serial, entry_id, repository)
        if not removed:
            raise NothingToDelete(serial, f"file {entry_id}")
        if delete_file:
            for record in removed:
                record.path.unlink(missing_ok=True)
        return removed

    def tracked_files(self, serial: str) -> List[TrackedFile]:
        return self.files_index.files_for(serial)

    def load_definitions(self, serial: str, entry_id: str, repository: Optional[str] = None) -> List[PatchDefinition]:
        """Parse a tracked file into the definitions it holds for serial."""
        for record in self.files_index.files_for(serial):
            if record.entry_id == entry_id and (repository is None or record.repository == repository):
                return load_patch_file(record.path)
        raise NotFoundError(f"No patch file found for the current serial: {serial}", serial=serial, entry_id=entry_id)
