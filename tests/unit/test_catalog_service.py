from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional, Union

import httpx
import pytest

from pkgvault.domain.errors import (
    CatalogParseError,
    CheatsNotFound,
    NetworkError,
    NotFoundError,
    NothingToDelete,
    RateLimitedError,
)
from pkgvault.domain.models import LauncherSettings, RepositorySource, TrackedFile
from pkgvault.services.catalog import service as service_module
from pkgvault.services.catalog.fetcher import RepositoryFetcher
from pkgvault.services.catalog.service import CatalogService

PATCHES = RepositorySource(
    name="GoldHEN",
    kind="patches",
    listing_url="https://example.test/patches",
    raw_base_url="https://raw.example.test/patches",
)
CHEATS = RepositorySource(
    name="GoldHEN-cheats",
    kind="cheats",
    listing_url="https://example.test/cheats",
    raw_base_url="https://raw.example.test/cheats",
)

CHEAT_JSON = json.dumps(
    {
        "name": "Example Game",
        "id": "CUSA00001",
        "version": "01.02",
        "credits": ["someone"],
        "mods": [{"name": "Infinite HP", "memory": [{"offset": "0x1234", "on": "90 90", "off": "01 02"}]}],
    }
)


def _patch_xml(serial: str, version: str, name: str = "60 FPS") -> str:
    return (
        "<Patch>"
        f"<TitleID><ID>{serial}</ID></TitleID>"
        f'<Metadata Name="{name}" Author="someone" AppVer="{version}">'
        '<PatchList><Line Type="bytes" Address="0x10" Value="9090"/></PatchList>'
        "</Metadata>"
        "</Patch>"
    )


def _listing(*names: str) -> str:
    return json.dumps([{"name": name, "type": "file"} for name in names])


Route = Union[str, httpx.Response]


def _service(tmp_path: Path, routes: Dict[str, Route], calls: Optional[List[str]] = None) -> CatalogService:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if calls is not None:
            calls.append(url)
        route = routes.get(url)
        if route is None:
            return httpx.Response(404)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, content=route.encode("utf-8"))

    settings = LauncherSettings(repositories=[PATCHES, CHEATS])
    fetcher = RepositoryFetcher(retry_delay=0, transport=httpx.MockTransport(handler))
    service = CatalogService(tmp_path / "catalog", settings, fetcher=fetcher)
    service.initialize()
    return service


def _patch_routes(**files: str) -> Dict[str, Route]:
    routes: Dict[str, Route] = {PATCHES.listing_url: _listing(*files)}
    for name, content in files.items():
        routes[f"{PATCHES.raw_base_url}/{name}"] = content
    return routes


def test_patch_refresh_builds_index_and_tracks_files(tmp_path: Path) -> None:
    routes = _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02"), "b.xml": _patch_xml("CUSA00002", "1.00")})
    service = _service(tmp_path, routes)

    index = asyncio.run(service.refresh("GoldHEN"))

    assert sorted(index.entries) == ["CUSA00001", "CUSA00002"]
    assert (tmp_path / "catalog" / "patches" / "GoldHEN" / "a.xml").exists()
    assert [f.entry_id for f in service.tracked_files("CUSA00001")] == ["a.xml"]
    definitions = service.load_definitions("CUSA00001", "a.xml")
    assert [d.name for d in definitions] == ["60 FPS"]

    reloaded = CatalogService(tmp_path / "catalog", service.settings)
    reloaded.initialize()
    assert reloaded.get_index("GoldHEN") == index


def test_listing_reports_incompatible_version(tmp_path: Path) -> None:
    service = _service(tmp_path, _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")}))
    asyncio.run(service.refresh("GoldHEN"))

    matching = service.list_for("CUSA00001", "01.02")
    assert [e.name for e in matching] == ["60 FPS"]
    assert matching.advisory is None

    listing = service.list_for("CUSA00001", "1.00")
    assert list(listing) == []
    assert listing.advisory is not None
    assert listing.advisory.available_versions == ["1.02"]
    assert "1.02" in listing.advisory.message

    unknown = service.list_for("CUSA09999", "1.00")
    assert list(unknown) == [] and unknown.advisory is None

    again = service.list_for("CUSA00001", "1.02")
    assert [e.entry_id for e in again] == [e.entry_id for e in again] == ["a.xml"]


def test_failed_refresh_leaves_previous_catalog_untouched(tmp_path: Path) -> None:
    routes = _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")})
    service = _service(tmp_path, routes)
    old_index = asyncio.run(service.refresh("GoldHEN"))
    files_json = (tmp_path / "catalog" / "files.json").read_text(encoding="utf-8")
    index_json = (tmp_path / "catalog" / "index" / "GoldHEN.json").read_text(encoding="utf-8")

    routes.update(_patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.05"), "b.xml": "<Patch><broken"}))
    with pytest.raises(CatalogParseError):
        asyncio.run(service.refresh("GoldHEN"))

    assert service.get_index("GoldHEN") is old_index
    assert (tmp_path / "catalog" / "files.json").read_text(encoding="utf-8") == files_json
    assert (tmp_path / "catalog" / "index" / "GoldHEN.json").read_text(encoding="utf-8") == index_json
    patches_root = tmp_path / "catalog" / "patches"
    assert [p.name for p in patches_root.iterdir()] == ["GoldHEN"]
    assert 'AppVer="1.02"' in (patches_root / "GoldHEN" / "a.xml").read_text(encoding="utf-8")


def test_refresh_all_reports_each_repository(tmp_path: Path) -> None:
    routes = _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")})
    routes[CHEATS.listing_url] = httpx.Response(500)
    service = _service(tmp_path, routes)

    outcomes = asyncio.run(service.refresh_all(kind=None))

    by_name = {o.repository: o for o in outcomes}
    assert by_name["GoldHEN"].ok and by_name["GoldHEN"].entries == 1
    assert not by_name["GoldHEN-cheats"].ok
    assert by_name["GoldHEN-cheats"].error["error"] == "network_error"


def test_rate_limit_carries_retry_after(tmp_path: Path) -> None:
    routes: Dict[str, Route] = {
        PATCHES.listing_url: httpx.Response(403, headers={"x-ratelimit-remaining": "0", "retry-after": "60"}),
    }
    calls: List[str] = []
    service = _service(tmp_path, routes, calls)

    with pytest.raises(RateLimitedError) as excinfo:
        asyncio.run(service.refresh("GoldHEN"))

    assert excinfo.value.retry_after == 60
    assert calls == [PATCHES.listing_url]
    assert service.get_index("GoldHEN") is None


def test_concurrent_refreshes_share_one_fetch(tmp_path: Path) -> None:
    calls: List[str] = []
    service = _service(tmp_path, _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")}), calls)

    async def run():
        return await asyncio.gather(service.refresh("GoldHEN"), service.refresh("GoldHEN"))

    first, second = asyncio.run(run())

    assert first is second
    assert calls.count(PATCHES.listing_url) == 1
    assert not service.is_refreshing("GoldHEN")


def test_cancelled_refresh_publishes_nothing(tmp_path: Path) -> None:
    events: Dict[str, asyncio.Event] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        events["started"].set()
        await events["release"].wait()
        return httpx.Response(200, content=_listing().encode("utf-8"))

    settings = LauncherSettings(repositories=[PATCHES, CHEATS])
    fetcher = RepositoryFetcher(retry_delay=0, transport=httpx.MockTransport(handler))
    service = CatalogService(tmp_path / "catalog", settings, fetcher=fetcher)
    service.initialize()

    async def run() -> None:
        events["started"] = asyncio.Event()
        events["release"] = asyncio.Event()
        pending = asyncio.create_task(service.refresh("GoldHEN"))
        await events["started"].wait()
        assert service.is_refreshing("GoldHEN")
        assert service.cancel_refresh("GoldHEN")
        with pytest.raises(asyncio.CancelledError):
            await pending

    asyncio.run(run())

    assert service.get_index("GoldHEN") is None
    assert not (tmp_path / "catalog" / "index" / "GoldHEN.json").exists()
    assert not service.cancel_refresh("GoldHEN")


def test_download_cheats_tracks_files(tmp_path: Path) -> None:
    routes: Dict[str, Route] = {
        CHEATS.listing_url: _listing("CUSA00001_01.02_someone.json", "CUSA00001_01.00.json", "README.md"),
        f"{CHEATS.raw_base_url}/CUSA00001_01.02_someone.json": CHEAT_JSON,
    }
    service = _service(tmp_path, routes)

    tracked = asyncio.run(service.download_cheats("GoldHEN-cheats", "CUSA00001", "1.02"))

    assert [t.entry_id for t in tracked] == ["CUSA00001_01.02_someone.json"]
    assert tracked[0].path.exists()
    definitions = service.load_definitions("CUSA00001", "CUSA00001_01.02_someone.json")
    assert definitions[0].mods[0].name == "Infinite HP"

    with pytest.raises(CheatsNotFound):
        asyncio.run(service.download_cheats("GoldHEN-cheats", "CUSA00001", "9.99"))

    service.untrack("CUSA00001", "CUSA00001_01.02_someone.json")
    assert not tracked[0].path.exists()
    with pytest.raises(NothingToDelete):
        service.untrack("CUSA00001", "CUSA00001_01.02_someone.json")


def test_track_requires_file_on_disk(tmp_path: Path) -> None:
    service = _service(tmp_path, {})
    local = tmp_path / "my_patch.xml"
    record = TrackedFile(entry_id="my_patch.xml", repository="GoldHEN", kind="patches", path=local)

    with pytest.raises(NotFoundError):
        service.track("CUSA00001", record)

    local.write_text(_patch_xml("CUSA00001", "1.02"), encoding="utf-8")
    service.track("CUSA00001", record)

    assert service.tracked_files("CUSA00001") == [record]
    assert service.untrack("CUSA00001", "my_patch.xml") == [record]
    assert not local.exists()


def test_listing_names_cannot_leave_the_catalog(tmp_path: Path) -> None:
    routes = _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")})
    routes[PATCHES.listing_url] = _listing("a.xml", "../../../escaped.xml")
    service = _service(tmp_path, routes)

    with pytest.raises(CatalogParseError, match="unsafe file name"):
        asyncio.run(service.refresh("GoldHEN"))

    assert service.get_index("GoldHEN") is None
    assert list(tmp_path.rglob("escaped.xml")) == []


def test_fetch_timeout_publishes_nothing(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, content=_listing().encode("utf-8"))

    settings = LauncherSettings(repositories=[PATCHES, CHEATS], fetch_timeout_seconds=0.05)
    fetcher = RepositoryFetcher(retry_delay=0, transport=httpx.MockTransport(handler))
    service = CatalogService(tmp_path / "catalog", settings, fetcher=fetcher)
    service.initialize()

    with pytest.raises(NetworkError, match="Timed out"):
        asyncio.run(service.refresh("GoldHEN"))

    assert service.get_index("GoldHEN") is None
    assert not (tmp_path / "catalog" / "index" / "GoldHEN.json").exists()
    assert not service.is_refreshing("GoldHEN")


def test_failed_index_write_restores_files_and_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.02")})
    service = _service(tmp_path, routes)
    old_index = asyncio.run(service.refresh("GoldHEN"))
    index_json = (tmp_path / "catalog" / "index" / "GoldHEN.json").read_text(encoding="utf-8")

    def failing_write(path: Path, text: str, encoding: str = "utf-8") -> None:
        raise OSError("disk full")

    monkeypatch.setattr(service_module, "atomic_write_text", failing_write)
    routes.update(_patch_routes(**{"a.xml": _patch_xml("CUSA00001", "1.05"), "b.xml": _patch_xml("CUSA00002", "1.00")}))
    with pytest.raises(OSError, match="disk full"):
        asyncio.run(service.refresh("GoldHEN"))

    assert service.get_index("GoldHEN") is old_index
    assert (tmp_path / "catalog" / "index" / "GoldHEN.json").read_text(encoding="utf-8") == index_json
    assert [f.entry_id for f in service.tracked_files("CUSA00001")] == ["a.xml"]
    assert service.tracked_files("CUSA00002") == []
    patches_root = tmp_path / "catalog" / "patches"
    assert [p.name for p in patches_root.iterdir()] == ["GoldHEN"]
    assert sorted(p.name for p in (patches_root / "GoldHEN").iterdir()) == ["a.xml"]
    assert 'AppVer="1.02"' in (patches_root / "GoldHEN" / "a.xml").read_text(encoding="utf-8")
