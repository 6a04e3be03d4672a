from pathlib import Path
from typing import Optional

from pkgvault.data.settings import get_data_dir, load_settings
from pkgvault.domain.models import LauncherSettings
from pkgvault.services.catalog.service import CatalogService
from pkgvault.services.extractor import ZipArchiveExtractor
from pkgvault.services.patching import PatchApplicator, SessionRegistry
from pkgvault.services.reconciliation import ReconciliationEngine
from pkgvault.storage.db_manager import LedgerStore
from pkgvault.storage.json_db_manager import JsonLedgerStore

_settings: Optional[LauncherSettings] = None
_ledger_store: Optional[LedgerStore] = None
_sessions: Optional[SessionRegistry] = None
_engine: Optional[ReconciliationEngine] = None
_catalog: Optional[CatalogService] = None
_applicator: Optional[PatchApplicator] = None


def get_settings() -> LauncherSettings:
    global _settings
    if _settings is None:
        _settings = load_settings(get_data_dir())
    return _settings


def get_ledger_store() -> LedgerStore:
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = JsonLedgerStore(get_data_dir())
        _ledger_store.initialize()
    return _ledger_store


def get_sessions() -> SessionRegistry:
    global _sessions
    if _sessions is None:
        _sessions = SessionRegistry()
    return _sessions


def get_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        staging_root: Path = get_data_dir() / "staging"
        _engine = ReconciliationEngine(
            get_ledger_store(),
            get_settings(),
            extractor=ZipArchiveExtractor(staging_root),
            sessions=get_sessions(),
        )
    return _engine


def get_catalog() -> CatalogService:
    global _catalog
    if _catalog is None:
        _catalog = CatalogService(get_data_dir() / "catalog", get_settings())
        _catalog.initialize()
    return _catalog


def get_applicator() -> PatchApplicator:
    global _applicator
    if _applicator is None:
        _applicator = PatchApplicator()
    return _applicator


def reset() -> None:
    """Drop all singletons so the next call rebuilds them (data dir changes, tests)."""
    global _settings, _ledger_store, _sessions, _engine, _catalog, _applicator
    _settings = _ledger_store = _sessions = _engine = _catalog = _applicator = None
