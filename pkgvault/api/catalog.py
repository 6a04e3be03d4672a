from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pkgvault.core.dependencies import get_catalog, get_engine
from pkgvault.domain.errors import NotFoundError
from pkgvault.services.catalog.service import CatalogService
from pkgvault.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/repositories")
async def list_repositories(catalog: CatalogService = Depends(get_catalog)) -> dict:
    repositories = []
    for repo in catalog.settings.repositories:
        index = catalog.get_index(repo.name)
        repositories.append(
            {
                "name": repo.name,
                "kind": repo.kind,
                "listing_url": repo.listing_url,
                "refreshing": catalog.is_refreshing(repo.name),
                "last_refreshed": index.built_at.isoformat() if index else None,
                "entries": sum(1 for _ in index.iter_entries()) if index else 0,
            }
        )
    return {"repositories": repositories}


@router.post("/refresh")
async def refresh_all(
    kind: str = Query(default="patches", description="'patches', 'cheats' or 'all'."),
    catalog: CatalogService = Depends(get_catalog),
) -> dict:
    outcomes = await catalog.refresh_all(None if kind == "all" else kind)
    return {"results": [o.model_dump(mode="json") for o in outcomes]}


@router.post("/{repository}/refresh")
async def refresh_repository(repository: str, catalog: CatalogService = Depends(get_catalog)) -> dict:
    index = await catalog.refresh(repository)
    return {
        "repository": index.repository,
        "kind": index.kind,
        "built_at": index.built_at.isoformat(),
        "serials": len(index.entries),
        "entries": sum(1 for _ in index.iter_entries()),
    }


@router.delete("/{repository}/refresh")
async def cancel_refresh(repository: str, catalog: CatalogService = Depends(get_catalog)) -> dict:
    catalog.get_repository(repository)
    return {"repository": repository, "cancelled": catalog.cancel_refresh(repository)}


@router.get("/games/{serial}")
async def list_for_game(
    serial: str,
    version: Optional[str] = Query(default=None, description="Game version; defaults to the installed one."),
    kind: Optional[str] = Query(default=None),
    catalog: CatalogService = Depends(get_catalog),
    engine: ReconciliationEngine = Depends(get_engine),
) -> dict:
    """
    Patches and cheats that apply to the game version. When nothing matches
    but other versions have entries, an incompatibility advisory is returned.
    """
    if version is None:
        title = await asyncio.to_thread(engine.get_title, serial)
        if title is None:
            raise NotFoundError(f"{serial} is not installed", serial=serial)
        version = title.game_version

    listing = catalog.list_for(serial, version, kind=kind)
    entries = [e.model_dump(mode="json") for e in listing]
    advisory = None
    if listing.advisory is not None:
        advisory = {**listing.advisory.model_dump(mode="json"), "message": listing.advisory.message}
    return {"serial": serial, "version": version, "entries": entries, "advisory": advisory}


@router.post("/{repository}/cheats/{serial}")
async def download_cheats(
    repository: str,
    serial: str,
    version: str = Query(description="Game version to download cheats for."),
    catalog: CatalogService = Depends(get_catalog),
) -> dict:
    tracked = await catalog.download_cheats(repository, serial, version)
    return {"files": [t.model_dump(mode="json") for t in tracked]}


@router.get("/files/{serial}")
async def tracked_files(serial: str, catalog: CatalogService = Depends(get_catalog)) -> dict:
    files = await asyncio.to_thread(catalog.tracked_files, serial)
    return {"serial": serial, "files": [f.model_dump(mode="json") for f in files]}


@router.delete("/files/{serial}/{entry_id}")
async def untrack_file(
    serial: str,
    entry_id: str,
    repository: Optional[str] = Query(default=None),
    catalog: CatalogService = Depends(get_catalog),
) -> dict:
    removed = await asyncio.to_thread(catalog.untrack, serial, entry_id, repository)
    return {"serial": serial, "removed": [f.model_dump(mode="json") for f in removed]}
