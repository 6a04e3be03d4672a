"""
Turn repository payloads into typed catalog data.

A listing is either JSON (a GitHub contents-style array, or an object with a
"files" array) or a repository web page whose file tree is embedded as JSON
inside a <script type="application/json"> tag. Unknown fields are ignored.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel

from pkgvault.domain.errors import CatalogParseError, PatchParseError
from pkgvault.domain.models import CatalogEntry, RepositorySource
from pkgvault.services.patching import parse_patch_xml, patch_xml_serials

_SCRIPT_RE = re.compile(
    r'<script[^>]*type="application/json"[^>]*>(?P<body>.*?)</script>',
    re.IGNORECASE | re.DOTALL,
)
_EMBEDDED_MARKER = 'data-target="react-app.embeddedData"'

# CUSA00001_01.02.json, CUSA00001_01.02_author.json
_CHEAT_NAME_RE = re.compile(
    r"^(?P<serial>[A-Z]{4}\d{5})_(?P<version>\d+(?:\.\d+)*)(?:_(?P<suffix>[^.]+))?\.json$",
    re.IGNORECASE,
)


def _is_safe_name(name: str) -> bool:
    # Listed names become local file names: one plain path component only.
    return (
        name not in ("", ".", "..")
        and "/" not in name
        and "\\" not in name
        and "\x00" not in name
        and ":" not in name
    )


class ListedFile(BaseModel):
    name: str
    url: str


def extract_embedded_json(html: str, repository: str = "") -> Any:
    """Return the embedded JSON document of a repository web page."""
    candidates = []
    for match in _SCRIPT_RE.finditer(html):
        tag = match.group(0)
        if _EMBEDDED_MARKER in tag:
            candidates.insert(0, match.group("body"))
        else:
            candidates.append(match.group("body"))

    for body in candidates:
        try:
            data = json.loads(body)
        except ValueError:
            continue
        if isinstance(data, dict) and "payload" in data:
            return data
    raise CatalogParseError(repository, "Failed to parse JSON data from HTML.")


def _listing_items(data: Any) -> Iterable[dict]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        payload = data.get("payload")
        if isinstance(payload, dict):
            tree = payload.get("tree") or {}
            items = tree.get("items") if isinstance(tree, dict) else None
            if isinstance(items, list):
                return items
        files = data.get("files")
        if isinstance(files, list):
            return files
    raise ValueError("no file list found")


def parse_listing(repo: RepositorySource, content: bytes) -> List[ListedFile]:
    """Parse a listing into file names and download URLs (files only)."""
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CatalogParseError(repo.name, f"listing is not UTF-8: {e}")

    if text.lstrip().startswith("<"):
        data = extract_embedded_json(text, repo.name)
    else:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise CatalogParseError(repo.name, f"invalid JSON listing: {e}")

    try:
        items = list(_listing_items(data))
    except ValueError as e:
        raise CatalogParseError(repo.name, str(e))

    files = []
    base = repo.raw_base_url.rstrip("/")
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise CatalogParseError(repo.name, f"malformed listing item: {item!r}")
        item_type = item.get("contentType") or item.get("type") or "file"
        if item_type not in ("file", "blob"):
            continue
        name = str(item["name"])
        if not _is_safe_name(name):
            raise CatalogParseError(repo.name, f"unsafe file name in listing: {name!r}")
        files.append(ListedFile(name=name, url=item.get("download_url") or f"{base}/{name}"))
    return files


def cheat_entry_from_name(repository: str, name: str) -> Optional[CatalogEntry]:
    """Cheat files carry their serial and game version in the file name."""
    match = _CHEAT_NAME_RE.match(name)
    if not match:
        return None
    serial = match.group("serial").upper()
    return CatalogEntry(
        repository=repository,
        entry_id=name,
        kind="cheats",
        serial=serial,
        version=match.group("version"),
        name=name,
        author=match.group("suffix"),
    )


def patch_entries_from_xml(repository: str, name: str, text: str) -> List[CatalogEntry]:
    """One entry per (serial, patch metadata) pair in a patch XML file."""
    try:
        definitions = parse_patch_xml(text)
        serials = patch_xml_serials(text)
    except PatchParseError as e:
        raise CatalogParseError(repository, f"{name}: {e.message}")
    if not serials:
        raise CatalogParseError(repository, f"{name}: no serials listed")

    entries = []
    for serial in serials:
        for definition in definitions:
            if not definition.app_version:
                raise CatalogParseError(repository, f"{name}: patch '{definition.name}' has no AppVer")
            entries.append(
                CatalogEntry(
                    repository=repository,
                    entry_id=name,
                    kind="patches",
                    serial=serial,
                    version=definition.app_version,
                    name=definition.name,
                    author=definition.author,
                )
            )
    return entries
