"""
Installed titles: list, install from a package file, delete parts.

Engine calls touch the filesystem and take per-serial locks, so they run in
a worker thread instead of on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from pkgvault.core.dependencies import get_engine
from pkgvault.domain.errors import NotFoundError
from pkgvault.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)
router = APIRouter()


class InstallRequest(BaseModel):
    """
    Install a package file.

    A first request is sent without overrides. When it comes back as a 409
    conflict, the client asks the user and repeats it with the flag set.
    """

    package_path: Path = Field(description="Path of the package file on the local machine.")
    confirm_overwrite: bool = Field(
        default=False,
        description="Replace an install of the same version (or a DLC that is already installed).",
    )
    force: bool = Field(
        default=False,
        description="Install a version older than the installed one.",
    )
    confirm_incompatible: bool = Field(
        default=False,
        description="Install an update whose target version differs from the installed game version.",
    )


@router.get("")
async def list_titles(engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    titles = await asyncio.to_thread(engine.list_titles)
    return {"titles": [t.model_dump(mode="json") for t in titles]}


@router.get("/{serial}")
async def get_title(serial: str, engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    title = await asyncio.to_thread(engine.get_title, serial)
    if title is None:
        raise NotFoundError(f"{serial} is not installed", serial=serial)
    return title.model_dump(mode="json")


@router.post("/install")
async def install_package(request: InstallRequest, engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    result = await asyncio.to_thread(
        engine.install_package,
        request.package_path,
        confirm_overwrite=request.confirm_overwrite,
        force=request.force,
        confirm_incompatible=request.confirm_incompatible,
    )
    return result.model_dump(mode="json")


@router.delete("/{serial}")
async def delete_game(serial: str, engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    await asyncio.to_thread(engine.delete_game, serial)
    return {"serial": serial, "deleted": "game"}


@router.delete("/{serial}/update")
async def delete_update(serial: str, engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    title = await asyncio.to_thread(engine.delete_update, serial)
    return title.model_dump(mode="json")


@router.delete("/{serial}/dlc")
async def delete_dlc(
    serial: str,
    dlc_id: Optional[str] = Query(default=None, description="DLC to delete; all DLC when omitted."),
    engine: ReconciliationEngine = Depends(get_engine),
) -> dict:
    title = await asyncio.to_thread(engine.delete_dlc, serial, dlc_id)
    return title.model_dump(mode="json")


@router.delete("/{serial}/savedata")
async def delete_save_data(serial: str, engine: ReconciliationEngine = Depends(get_engine)) -> dict:
    await asyncio.to_thread(engine.delete_save_data, serial)
    return {"serial": serial, "deleted": "save data"}
