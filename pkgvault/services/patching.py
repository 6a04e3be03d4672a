"""
Patch definitions and their application to a running game.

Two definition formats are understood:

Patch XML, one <Metadata> block per patch:

    <Patch>
      <TitleID><ID>CUSA00001</ID></TitleID>
      <Metadata Title="..." Name="60 FPS" Author="..." AppVer="01.02" AppElf="eboot.bin">
        <PatchList>
          <Line Type="bytes" Address="0x00a1b2c3" Value="9090"/>
        </PatchList>
      </Metadata>
    </Patch>

Cheat JSON, one file per game version:

    {"name": "...", "id": "CUSA00001", "version": "01.02", "credits": ["..."],
     "mods": [{"name": "Infinite HP", "memory": [{"offset": "0x1234", "on": "90 90", "off": "01 02"}]}]}

Edits are only written through an explicit GameSession. There is no global
"running game" state.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol
from xml.etree import ElementTree as etree

from pydantic import ValidationError

from pkgvault.domain.errors import (
    ApplyTargetUnavailable,
    GameAlreadyRunning,
    IncompatiblePatch,
    PatchParseError,
)
from pkgvault.domain.models import PatchDefinition, PatchEdit, PatchMod
from pkgvault.domain.versions import versions_match

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class MemoryInterface(Protocol):
    def is_active(self) -> bool:
        ...

    def write_edit(self, address: int, value: bytes) -> None:
        ...


class GameSession:
    """A running game, as seen by the patch applicator."""

    def __init__(self, serial: str, version: str, memory: MemoryInterface):
        self.serial = serial
        self.version = version
        self.memory = memory

    def is_active(self) -> bool:
        return self.memory.is_active()


class SessionRegistry:
    """Tracks which serials currently have a running game."""

    def __init__(self):
        self._sessions: Dict[str, GameSession] = {}
        self._lock = threading.Lock()

    def start(self, serial: str, version: str, memory: MemoryInterface) -> GameSession:
        with self._lock:
            existing = self._sessions.get(serial)
            if existing is not None and existing.is_active():
                raise GameAlreadyRunning(serial)
            session = GameSession(serial, version, memory)
            self._sessions[serial] = session
        logger.info(f"Game session started for {serial} ({version})")
        return session

    def stop(self, serial: str) -> None:
        with self._lock:
            self._sessions.pop(serial, None)

    def get(self, serial: str) -> Optional[GameSession]:
        with self._lock:
            return self._sessions.get(serial)

    def is_running(self, serial: str) -> bool:
        session = self.get(serial)
        return session is not None and session.is_active()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_int(value: Optional[str], what: str) -> int:
    if value is None or not value.strip():
        raise PatchParseError(f"Missing {what}")
    # Addresses and offsets are hexadecimal, with or without the 0x prefix.
    text = value.strip()
    try:
        return int(text, 16)
    except ValueError:
        raise PatchParseError(f"Invalid {what}: {value!r}")


def _parse_hex_bytes(value: Optional[str], what: str) -> bytes:
    if value is None:
        raise PatchParseError(f"Missing {what}")
    text = value.replace(" ", "")
    if text.lower().startswith("0x"):
        text = text[2:]
    if not text:
        raise PatchParseError(f"Missing {what}")
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise PatchParseError(f"Invalid {what}: {value!r}")


_INT_FORMATS = {"byte": "<B", "bytes16": "<H", "bytes32": "<I", "bytes64": "<Q"}
_FLOAT_FORMATS = {"float32": "<f", "float64": "<d"}


def encode_line_value(edit_type: str, value: Optional[str]) -> bytes:
    """Encode a patch XML <Line> value according to its Type attribute."""
    edit_type = edit_type.lower()
    if not value:
        raise PatchParseError(f"Missing {edit_type} value")
    try:
        if edit_type == "bytes":
            return _parse_hex_bytes(value, "bytes value")
        if edit_type in _INT_FORMATS:
            return struct.pack(_INT_FORMATS[edit_type], int(value, 0))
        if edit_type in _FLOAT_FORMATS:
            return struct.pack(_FLOAT_FORMATS[edit_type], float(value))
        if edit_type == "utf8":
            return value.encode("utf-8") + b"\x00"
        if edit_type == "utf16":
            return value.encode("utf-16-le") + b"\x00\x00"
    except (ValueError, struct.error):
        raise PatchParseError(f"Invalid {edit_type} value: {value!r}")
    raise PatchParseError(f"Unsupported patch line type: {edit_type}")


def parse_patch_xml(text: str) -> List[PatchDefinition]:
    try:
        root = etree.fromstring(text)
    except etree.ParseError as e:
        raise PatchParseError(f"Failed to parse XML: {e}")

    serials = [node.text.strip() for node in root.iter("ID") if node.text and node.text.strip()]
    definitions = []
    for metadata in root.iter("Metadata"):
        name = metadata.get("Name")
        if not name:
            raise PatchParseError("Patch metadata without a Name")
        edits = []
        for line in metadata.iter("Line"):
            edit_type = line.get("Type", "bytes")
            edits.append(
                PatchEdit(
                    address=_parse_int(line.get("Address"), "address"),
                    value=encode_line_value(edit_type, line.get("Value")),
                    edit_type=edit_type,
                )
            )
        definitions.append(
            PatchDefinition(
                serial=serials[0] if serials else None,
                app_version=metadata.get("AppVer"),
                name=name,
                author=metadata.get("Author"),
                mods=[PatchMod(name=name, edits=edits)],
            )
        )
    if not definitions:
        raise PatchParseError("No patch metadata found")
    return definitions


def patch_xml_serials(text: str) -> List[str]:
    """Serials a patch XML file applies to (<TitleID><ID>...)."""
    try:
        root = etree.fromstring(text)
    except etree.ParseError as e:
        raise PatchParseError(f"Failed to parse XML: {e}")
    return [node.text.strip() for node in root.iter("ID") if node.text and node.text.strip()]


def parse_cheat_json(text: str) -> PatchDefinition:
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise PatchParseError(f"Invalid cheat JSON: {e}")
    if not isinstance(raw, dict):
        raise PatchParseError("Cheat file must contain a JSON object")

    mods = []
    for mod in raw.get("mods") or []:
        if not isinstance(mod, dict) or not mod.get("name"):
            raise PatchParseError("Cheat mod without a name")
        edits = []
        for memory in mod.get("memory") or []:
            edits.append(
                PatchEdit(
                    address=_parse_int(memory.get("offset"), "offset"),
                    value=_parse_hex_bytes(memory.get("on"), "on value"),
                    original=_parse_hex_bytes(memory["off"], "off value") if memory.get("off") else None,
                )
            )
        mods.append(PatchMod(name=mod["name"], edits=edits))

    credits = raw.get("credits") or []
    try:
        return PatchDefinition(
            serial=raw.get("id"),
            app_version=raw.get("version"),
            name=raw.get("name") or raw.get("id") or "cheats",
            author=", ".join(str(c) for c in credits) or None,
            mods=mods,
        )
    except ValidationError as e:
        raise PatchParseError(f"Invalid cheat definition: {e}")


def load_patch_file(path: Path) -> List[PatchDefinition]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PatchParseError(f"Unable to open the file for reading: {path.name}: {e}")
    if path.suffix.lower() == ".json":
        return [parse_cheat_json(text)]
    return parse_patch_xml(text)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


class PatchApplicator:
    def apply(
        self,
        definition: PatchDefinition,
        session: Optional[GameSession],
        *,
        mods: Optional[Iterable[str]] = None,
        confirm_incompatible: bool = False,
    ) -> int:
        """
        Write the selected mods' edits in declaration order.

        Returns the number of edits written. All edits are validated before
        the first write.
        """
        if session is None or not session.is_active():
            raise ApplyTargetUnavailable(definition.serial)

        if (
            definition.app_version
            and not confirm_incompatible
            and not versions_match(definition.app_version, session.version)
        ):
            raise IncompatiblePatch(session.serial, session.version, definition.app_version)

        selected = set(mods) if mods is not None else None
        unknown = (selected or set()) - {m.name for m in definition.mods}
        if unknown:
            raise PatchParseError(f"Unknown mods: {', '.join(sorted(unknown))}")

        edits = [
            edit
            for mod in definition.mods
            if selected is None or mod.name in selected
            for edit in mod.edits
        ]
        for edit in edits:
            session.memory.write_edit(edit.address, edit.value)

        logger.info(f"Applied {len(edits)} edits from '{definition.name}' to {session.serial}")
        return len(edits)
