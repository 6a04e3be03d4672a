from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pkgvault.core.dependencies import get_applicator, get_catalog, get_sessions
from pkgvault.domain.errors import ApplyTargetUnavailable, NotFoundError
from pkgvault.services.catalog.service import CatalogService
from pkgvault.services.patching import PatchApplicator, SessionRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


class ApplyRequest(BaseModel):
    entry_id: str = Field(description="Tracked file to apply, as listed under /catalog/files/{serial}.")
    repository: Optional[str] = Field(default=None, description="Repository of the file when the name is ambiguous.")
    patch_name: Optional[str] = Field(default=None, description="Patch inside the file; every patch when omitted.")
    mods: Optional[List[str]] = Field(default=None, description="Mods to enable; every mod when omitted.")
    confirm_incompatible: bool = Field(
        default=False,
        description="Apply even though the patch targets a different game version.",
    )


@router.get("/{serial}")
async def session_status(serial: str, sessions: SessionRegistry = Depends(get_sessions)) -> dict:
    session = sessions.get(serial)
    running = session is not None and session.is_active()
    return {"serial": serial, "running": running, "version": session.version if running else None}


@router.post("/{serial}/apply")
async def apply_patch(
    serial: str,
    request: ApplyRequest,
    sessions: SessionRegistry = Depends(get_sessions),
    catalog: CatalogService = Depends(get_catalog),
    applicator: PatchApplicator = Depends(get_applicator),
) -> dict:
    session = sessions.get(serial)
    if session is None or not session.is_active():
        raise ApplyTargetUnavailable(serial)

    definitions = await asyncio.to_thread(catalog.load_definitions, serial, request.entry_id, request.repository)
    if request.patch_name is not None:
        definitions = [d for d in definitions if d.name == request.patch_name]
        if not definitions:
            raise NotFoundError(
                f"No patch named {request.patch_name} in {request.entry_id}",
                serial=serial,
                entry_id=request.entry_id,
            )

    applied = []
    for definition in definitions:
        count = applicator.apply(
            definition,
            session,
            mods=request.mods,
            confirm_incompatible=request.confirm_incompatible,
        )
        applied.append({"name": definition.name, "edits": count})
    return {"serial": serial, "entry_id": request.entry_id, "applied": applied}
