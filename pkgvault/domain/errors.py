"""
Error taxonomy for the library manager.

Every error raised by the core derives from PkgVaultError and belongs to one of
five families:
- StorageError: open/read/write failures on ledger, index or patch files
- ParseError: malformed versions, catalog payloads, patch definitions, headers
- NetworkError: repository fetch failures (including rate limits)
- ConflictError: install/delete decisions that need the caller to confirm,
  override or cancel
- StateError: operations that are invalid for the current game session state

ConflictError is never retried by the core. The caller repeats the operation
with the matching override flag.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PkgVaultError(Exception):
    """Base class for all library manager errors."""

    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class NotFoundError(PkgVaultError):
    """Unknown serial, repository or tracked file."""

    code = "not_found"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(PkgVaultError):
    code = "storage_error"


class LedgerReadError(StorageError):
    code = "ledger_read_error"


class LedgerWriteError(StorageError):
    code = "ledger_write_error"


class FilesIndexError(StorageError):
    """files.json exists but cannot be read, parsed or written."""

    code = "files_index_error"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseError(PkgVaultError):
    code = "parse_error"


class VersionParseError(ParseError):
    code = "version_parse_error"

    def __init__(self, value: str):
        super().__init__(f"Invalid version identifier: {value!r}", value=value)
        self.value = value


class CatalogParseError(ParseError):
    code = "catalog_parse_error"

    def __init__(self, repository: str, reason: str):
        super().__init__(f"Failed to parse catalog for {repository}: {reason}", repository=repository)
        self.repository = repository


class PatchParseError(ParseError):
    code = "patch_parse_error"


class ExtractionError(ParseError):
    """The archive extractor could not unpack or identify a package."""

    code = "extraction_error"


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class NetworkError(PkgVaultError):
    code = "network_error"


class RateLimitedError(NetworkError):
    """The remote host refused the request for now; retry after the hint."""

    code = "rate_limited"

    def __init__(self, url: str, retry_after: Optional[float] = None):
        super().__init__(f"Rate limit reached for {url}", url=url, retry_after=retry_after)
        self.url = url
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Conflicts (caller decides: confirm, override or cancel)
# ---------------------------------------------------------------------------


class ConflictError(PkgVaultError):
    code = "conflict"


class AlreadyInstalled(ConflictError):
    code = "already_installed"

    def __init__(self, serial: str, version: Optional[str] = None, dlc_id: Optional[str] = None):
        if dlc_id:
            message = f"DLC already installed: {dlc_id}"
        else:
            message = f"{serial} version {version} is already installed"
        super().__init__(message, serial=serial, version=version, dlc_id=dlc_id)
        self.serial = serial
        self.version = version
        self.dlc_id = dlc_id


class OlderVersionRejected(ConflictError):
    code = "older_version_rejected"

    def __init__(self, serial: str, package_version: str, installed_version: str):
        super().__init__(
            f"Package version {package_version} is older than installed version: {installed_version}",
            serial=serial,
            package_version=package_version,
            installed_version=installed_version,
        )
        self.serial = serial
        self.package_version = package_version
        self.installed_version = installed_version


class IncompatiblePatch(ConflictError):
    """Advisory: the patch targets a different base version than the one installed."""

    code = "incompatible_patch"

    def __init__(self, serial: str, installed_version: str, target_version: Optional[str]):
        super().__init__(
            f"The game is in version {installed_version}, "
            f"the patch only works on version {target_version}",
            serial=serial,
            installed_version=installed_version,
            target_version=target_version,
        )
        self.serial = serial
        self.installed_version = installed_version
        self.target_version = target_version


class NothingToDelete(ConflictError):
    code = "nothing_to_delete"

    def __init__(self, serial: str, resource: str):
        super().__init__(f"{serial} has no {resource} to delete", serial=serial, resource=resource)
        self.serial = serial
        self.resource = resource


class BaseGameNotInstalled(ConflictError):
    code = "base_game_not_installed"

    def __init__(self, serial: str, kind: str):
        super().__init__(
            f"Package for {serial} is a {kind}, install the game first",
            serial=serial,
            kind=kind,
        )
        self.serial = serial


class CheatsNotFound(ConflictError):
    code = "cheats_not_found"

    def __init__(self, repository: str, serial: str, version: str):
        super().__init__(
            f"No cheats found for {serial} version {version} in {repository}",
            repository=repository,
            serial=serial,
            version=version,
        )


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class StateError(PkgVaultError):
    code = "state_error"


class ApplyTargetUnavailable(StateError):
    code = "apply_target_unavailable"

    def __init__(self, serial: Optional[str] = None):
        super().__init__("Can't apply cheats before the game is started", serial=serial)


class GameAlreadyRunning(StateError):
    code = "game_already_running"

    def __init__(self, serial: str):
        super().__init__(f"Game {serial} is already running", serial=serial)
        self.serial = serial
