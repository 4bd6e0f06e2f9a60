from functools import partial
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin
import logging
import time

import aiohttp

from mirror_engine import (
    SINGLE_ATTEMPT,
    DocumentRewriter,
    EmbedCssUrls,
    Fetcher,
    FetchFailure,
    MirrorConfig,
    MirrorStats,
    NotFound,
    ResourceCache,
    RewriteOriginUrls,
    WorkerPool,
    atomic_write,
    sanitized_basename,
)

logger = logging.getLogger(__name__)

ORIGIN = "https://papunika.com"
ROOT_URL = ORIGIN + "/map/"
WORLD_URL = ROOT_URL + "data/zones/us/overworld.json"
ZONE_DATA_URL = ROOT_URL + "data/zones/us/{zone_id}.json"
BASE_ZONE_ID = "00000"  # not listed in the world document but always present

ASSET_URL = ROOT_URL + "assets/{name}.png"
ZONE_ICON_URL = ROOT_URL + "assets/zones/{zone_id}.png"
ISLAND_URL = ORIGIN + "/assets/Island/island_{zone_id}.png"
RAPPORT_URL = ORIGIN + "/assets/Rapport/rapport_npc_{rapport_id}.png"

OVERWORLD_TILE_URL = ROOT_URL + "public/tiles/overworld/{zoom}_{x}_{y}.jpg"
ZONE_TILE_URL = ROOT_URL + "public/tiles/{zone_id}/{zoom}_{x}_{y}.jpg"
OVERWORLD_MAX_ZOOM = 5
ZONE_MAX_ZOOM = 3

FONT_HOSTS = ("fonts.googleapis.com",)
TRACKING_SCRIPT_PREFIXES = ("/cdn-cgi/",)
INTERACTIVE_SCRIPT = "map.js"
BASE_PATH_VARIABLE = "worldPath"

ZONE_ICON_MARKER = 1
ISLAND_MARKERS = (2, 3)

ASSETS = [
    "island",
    "islandPvP",
    "affinity",
    "astory",
    "food",
    "ingredient",
    "mokoko",
    "spassage",
    "viewpoint",
    "hstory",
    "minuet",
    "resonance",
    "monster",
    "boss",
    "notice",
    "merchant",
    "ogate",
    "ghost",
    "emarine",
    "smerchant",
    "cdotr",
    "cdotb",
    "cdotg",
]


def relative_path(url: str) -> str:
    """Path of a mirrored file under the output directory.

    URLs below the map root keep their path relative to it, anything else on
    the origin keeps its path relative to the origin.
    """
    if url.startswith(ROOT_URL):
        return url[len(ROOT_URL):]
    if url.startswith(ORIGIN + "/"):
        return url[len(ORIGIN):].lstrip("/")
    raise ValueError(f"bad url: {url}")


def tile_urls(template: str, max_zoom: int, **fields) -> List[str]:
    """Every tile of a pyramid: an NxN grid with N = 2**zoom for zoom in [0, max_zoom)."""
    urls = []
    for zoom in range(max_zoom):
        size = 2 ** zoom
        for x in range(size):
            for y in range(size):
                urls.append(template.format(zoom=zoom, x=x, y=y, **fields))
    return urls


def asset_urls() -> List[str]:
    return [ASSET_URL.format(name=name) for name in dict.fromkeys(ASSETS)]


def zone_entries(world: Optional[Dict]) -> List[Dict]:
    if not world:
        return []
    return [zone for zone in world.get("zones") or [] if isinstance(zone, dict) and "id" in zone]


def zone_data_urls(world: Optional[Dict]) -> List[str]:
    ids = [BASE_ZONE_ID] + [str(zone["id"]) for zone in zone_entries(world)]
    return [ZONE_DATA_URL.format(zone_id=zone_id) for zone_id in dict.fromkeys(ids)]


def marker_media_urls(zone_docs: Iterable[Optional[Dict]]) -> List[str]:
    urls = []
    for doc in zone_docs:
        if not doc:
            continue
        for marker in doc.get("markers") or []:
            for data in marker.get("data") or []:
                popup_media = data.get("popupMedia")
                if popup_media and not popup_media.startswith("http"):
                    urls.append(ROOT_URL + popup_media.lstrip("/"))
                rapport_id = data.get("rapportId")
                if rapport_id:
                    urls.append(RAPPORT_URL.format(rapport_id=rapport_id))
    return urls


def zone_image_urls(world: Optional[Dict], zone_icons: bool = True) -> List[str]:
    urls = []
    for zone in zone_entries(world):
        marker_type = zone.get("markerType")
        if zone_icons and marker_type == ZONE_ICON_MARKER:
            urls.append(ZONE_ICON_URL.format(zone_id=zone["id"]))
        elif marker_type in ISLAND_MARKERS:
            urls.append(ISLAND_URL.format(zone_id=zone["id"]))
    return urls


def zone_tile_urls(world: Optional[Dict], max_zoom: int = ZONE_MAX_ZOOM) -> List[str]:
    urls = []
    for zone in zone_entries(world):
        urls.extend(tile_urls(ZONE_TILE_URL, max_zoom, zone_id=zone["id"]))
    return urls


class PapunikaMirror:
    def __init__(self, config: MirrorConfig, session=None, sleep=None):
        self.config = config
        self.session = session
        self.stats = MirrorStats()
        self._sleep = sleep
        self.fetcher = None
        self.cache = None
        self.pool = None

    async def download(self) -> MirrorStats:
        """Main mirror method"""
        self.stats.start_time = time.time()
        try:
            if self.session is not None:
                await self._run(self.session)
            else:
                timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
                connector = aiohttp.TCPConnector(limit=self.config.concurrency)
                async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
                    await self._run(session)
        except Exception as e:
            logger.error(f"Mirror failed: {e}")
            raise

        logger.info(f"Mirror complete: {self.stats.to_dict()}")
        return self.stats

    async def _run(self, session):
        self.fetcher = Fetcher(session, self.config.retry_policy, self.stats, sleep=self._sleep)
        self.cache = ResourceCache(self.config, self.fetcher)
        self.pool = WorkerPool(self.config.concurrency)

        await self.mirror_document()

        if self.config.assets:
            await self._mirror_all("assets", asset_urls())

        world = await self.cache.mirror(WORLD_URL, relative_path(WORLD_URL), parse_json=True)
        if world is None:
            logger.warning("no world document, zones cannot be enumerated")

        if self.config.zones:
            await self.mirror_zones(world)

        if self.config.tiles:
            urls = tile_urls(OVERWORLD_TILE_URL, OVERWORLD_MAX_ZOOM)
            if self.config.zones:
                urls += zone_tile_urls(world, ZONE_MAX_ZOOM)
            await self._mirror_all("tiles", urls)

    def _script_transform(self, src: str):
        if sanitized_basename(urljoin(ROOT_URL, src)) == INTERACTIVE_SCRIPT:
            return RewriteOriginUrls(ORIGIN, BASE_PATH_VARIABLE)
        return None

    async def mirror_document(self) -> None:
        """Fetch the entry page, cache its stylesheets and scripts and write index.html."""
        index_path = self.config.outdir / "index.html"
        existing = self.config.reuse_cache and index_path.is_file()
        if existing and not self.config.refresh:
            logger.info(f"reusing cached file {index_path}")
            self.stats.reused += 1
            return

        try:
            page = await self.fetcher.fetch(ROOT_URL, SINGLE_ATTEMPT if existing else None)
        except NotFound:
            logger.warning(f"url not found: {ROOT_URL}")
            self.stats.not_found += 1
            return
        except FetchFailure as e:
            if not existing:
                raise
            logger.warning(f"failed to fetch root page {e}; keeping {index_path}")
            self.stats.stale += 1
            return

        rewriter = DocumentRewriter(
            self.cache,
            ROOT_URL,
            stylesheet_transform=EmbedCssUrls(self.fetcher),
            script_transform=self._script_transform,
            skip_stylesheet_hosts=FONT_HOSTS,
            remove_script_prefixes=TRACKING_SCRIPT_PREFIXES,
        )
        html = await rewriter.rewrite(page.text())
        atomic_write(index_path, html.encode("utf-8"))
        self.stats.written += 1
        logger.info(f"wrote {index_path}")

    async def _mirror_all(self, phase: str, urls: List[str], parse_json: bool = False) -> List[Any]:
        jobs = [
            partial(self.cache.mirror, url, relative_path(url), parse_json=parse_json)
            for url in dict.fromkeys(urls)
        ]
        return await self.pool.run(phase, jobs)

    async def mirror_zones(self, world: Optional[Dict]) -> None:
        docs = await self._mirror_all("zone data", zone_data_urls(world), parse_json=True)
        media = marker_media_urls(docs) + zone_image_urls(world, self.config.zone_icons)
        await self._mirror_all("zone media", media)
