from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urljoin, urlparse
import asyncio
import base64
import hashlib
import json
import logging
import mimetypes
import os
import posixpath
import re
import tempfile
import time

import aiohttp
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# md5 hex digest length
FINGERPRINT_LENGTH = hashlib.md5().digest_size * 2

CSS_URL_RE = re.compile(r"url\(((?!data:)[^)]+)\)")
RATE_LIMIT_STATUSES = (429,)


class MirrorError(Exception):
    """Base class for mirror failures."""


class FetchError(MirrorError):
    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        super().__init__(self._message())

    def _message(self) -> str:
        if self.reason:
            return f"{self.url}: {self.reason}"
        return f"{self.url}: bad status code: {self.status}"


class NotFound(FetchError):
    """Upstream answered 404. Never retried."""

    def _message(self) -> str:
        return f"url not found: {self.url}"


class FetchFailure(FetchError):
    """Any other bad status or transport error."""


class CacheIndexError(MirrorError):
    pass


class StartupError(MirrorError):
    pass


@dataclass(frozen=True)
class MirrorConfig:
    outdir: Path = Path("mirror")
    tiles: bool = True
    assets: bool = True
    zones: bool = True
    zone_icons: bool = True
    refresh: bool = False
    reuse_cache: bool = True
    concurrency: int = 16
    retry_base_delay: float = 0.25
    max_attempts: Optional[int] = None
    request_timeout: float = 300

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must be a non-negative number")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def retry_policy(self) -> "RetryPolicy":
        return RetryPolicy(base_delay=self.retry_base_delay, max_attempts=self.max_attempts)


@dataclass
class MirrorStats:
    fetched: int = 0
    reused: int = 0
    stale: int = 0
    not_found: int = 0
    written: int = 0
    removed_scripts: int = 0
    start_time: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "fetched": self.fetched,
            "reused": self.reused,
            "stale": self.stale,
            "not_found": self.not_found,
            "written": self.written,
            "removed_scripts": self.removed_scripts,
            "elapsed_time": (
                round(datetime.now().timestamp() - self.start_time, 2)
                if self.start_time
                else 0
            ),
        }


def check_permissions(outdir: Path) -> bool:
    """Fail fast if the output directory cannot be written.

    Returns whether previously cached files may be read back (cache reuse).
    """
    probe = Path(outdir).absolute()
    while not probe.exists():
        if probe.parent == probe:
            break
        probe = probe.parent
    if not os.access(probe, os.W_OK):
        raise StartupError(f"write access to {outdir} is required (checked {probe})")

    if Path(outdir).exists() and not os.access(outdir, os.R_OK | os.X_OK):
        logger.warning(f"allow read access to {outdir} to reuse cached files")
        return False
    return True


# --- Retrying fetcher ---

@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 0.25
    max_attempts: Optional[int] = None  # None retries forever

    def delay(self, attempt: int) -> float:
        """Backoff before the retry that follows 0-indexed ``attempt``."""
        return self.base_delay * (2 ** attempt)

    def allows(self, attempts_made: int) -> bool:
        return self.max_attempts is None or attempts_made < self.max_attempts


SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


@dataclass
class FetchedResource:
    url: str
    content: bytes
    content_type: Optional[str] = None

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class Fetcher:
    def __init__(
        self,
        session,
        policy: RetryPolicy = RetryPolicy(),
        stats: Optional[MirrorStats] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.session = session
        self.policy = policy
        self.stats = stats if stats is not None else MirrorStats()
        self._sleep = sleep or asyncio.sleep

    async def fetch_once(self, url: str) -> FetchedResource:
        """Single GET. Raises NotFound for 404 and FetchFailure for anything but 200."""
        try:
            async with self.session.get(url) as response:
                if response.status == 404:
                    raise NotFound(url, status=404)
                if response.status != 200:
                    reason = f"bad status code: {response.status}"
                    if response.status in RATE_LIMIT_STATUSES:
                        retry_after = response.headers.get("Retry-After")
                        reason += " (rate limited"
                        reason += f", retry after {retry_after}s)" if retry_after else ")"
                    raise FetchFailure(url, status=response.status, reason=reason)
                content = await response.read()
                content_type = response.headers.get("Content-Type")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchFailure(url, reason=f"{type(e).__name__}: {e}") from e

        self.stats.fetched += 1
        return FetchedResource(url=url, content=content, content_type=content_type)

    async def fetch(self, url: str, policy: Optional[RetryPolicy] = None) -> FetchedResource:
        """Fetch with exponential backoff on FetchFailure. NotFound propagates at once."""
        policy = policy or self.policy
        attempt = 0
        logger.debug(f"fetching {url}")
        while True:
            try:
                return await self.fetch_once(url)
            except FetchFailure as e:
                if not policy.allows(attempt + 1):
                    raise
                wait_time = policy.delay(attempt)
                logger.warning(f"failed to fetch {e}, retrying in {wait_time * 1000:.0f}ms")
                await self._sleep(wait_time)
                attempt += 1


# --- Cache index ---

class CacheIndex:
    """Finds cached artifacts by directory listing.

    A match is either the legacy name ``<name><ext>`` or a fingerprinted
    ``<name>-<fingerprint><ext>``. The fixed fingerprint length keeps
    ``foobar.css`` from matching a lookup for ``foo``.

    Each directory is listed once; files written afterwards are added with
    ``record`` so a phase of lookups does not rescan the same directory.
    """

    def __init__(self, fingerprint_length: int = FINGERPRINT_LENGTH):
        self.fingerprint_length = fingerprint_length
        self._listings: Dict[Path, Dict[str, float]] = {}

    def matches(self, filename: str, name: str, ext: str) -> bool:
        if filename == name + ext:
            return True
        return (
            filename.startswith(name + "-")
            and filename.endswith(ext)
            and len(filename) == len(name) + len(ext) + self.fingerprint_length + 1
        )

    def _list_directory(self, directory: Path) -> Dict[str, float]:
        """File names in ``directory`` mapped to their mtimes."""
        try:
            with os.scandir(directory) as entries:
                return {entry.name: entry.stat().st_mtime for entry in entries if entry.is_file()}
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            return {}
        except OSError as e:
            raise CacheIndexError(f"could not list {directory}: {e}") from e

    def _listing(self, directory: Path) -> Dict[str, float]:
        directory = Path(directory)
        if directory not in self._listings:
            self._listings[directory] = self._list_directory(directory)
        return self._listings[directory]

    def record(self, filepath: Path) -> None:
        """Add a freshly written file to an already listed directory."""
        filepath = Path(filepath)
        listing = self._listings.get(filepath.parent)
        if listing is not None:
            listing[filepath.name] = filepath.stat().st_mtime

    def locate(self, directory: Path, name: str, ext: str) -> Optional[str]:
        try:
            listing = self._listing(directory)
        except CacheIndexError as e:
            logger.warning(str(e))
            return None

        candidates = [filename for filename in listing if self.matches(filename, name, ext)]
        if not candidates:
            return None
        # after a refresh older artifacts stay behind; the newest one is current
        return max(candidates, key=lambda filename: (listing[filename], filename))

    def locate_path(self, filepath: Path) -> Optional[str]:
        filepath = Path(filepath)
        return self.locate(filepath.parent, filepath.stem, filepath.suffix)


# --- Filesystem helpers ---

def fingerprint(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


def sanitized_basename(url: str) -> str:
    """Logical filename for a URL with version decorations removed."""
    name = posixpath.basename(urlparse(url).path)
    name = name.replace(".min.", ".", 1)
    name = re.sub(r"-[A-Za-z0-9_]+\.[A-Za-z0-9_]+\.[A-Za-z0-9_]+\.", ".", name, count=1)
    return re.sub(r"@.*$", "", name)


def atomic_write(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.remove(temp_name)
        raise


# (url, content, retry policy for any fetches the transform makes)
Transform = Callable[[str, bytes, Optional[RetryPolicy]], Awaitable[bytes]]


# --- Resource cache writer ---

class ResourceCache:
    def __init__(self, config: MirrorConfig, fetcher: Fetcher, index: Optional[CacheIndex] = None):
        self.config = config
        self.fetcher = fetcher
        self.index = index or CacheIndex()
        self.stats = fetcher.stats

    def _existing(self, directory: Path, name: str, ext: str) -> Optional[str]:
        if not self.config.reuse_cache:
            return None
        return self.index.locate(directory, name, ext)

    async def cache(self, url: str, prefix: str = "/", transform: Optional[Transform] = None) -> str:
        """Store ``url`` as ``<prefix>/<name>-<fingerprint><ext>`` and return that served path."""
        sanitized = sanitized_basename(url)
        name, ext = posixpath.splitext(sanitized)
        write_dir = self.config.outdir / prefix.strip("/")

        existing = self._existing(write_dir, name, ext)
        if existing and not self.config.refresh:
            reuse_path = posixpath.join(prefix, existing)
            logger.info(f"reusing cached resource {reuse_path}")
            self.stats.reused += 1
            return reuse_path

        # one attempt only when a stale copy can be served instead
        policy = SINGLE_ATTEMPT if existing else None
        try:
            resource = await self.fetcher.fetch(url, policy)
            content = resource.content
            if transform:
                content = await transform(url, content, policy)
        except FetchError as e:
            if not existing:
                raise
            reuse_path = posixpath.join(prefix, existing)
            logger.warning(f"failed to cache {e}; reusing cached resource {reuse_path}")
            self.stats.stale += 1
            return reuse_path

        logger.info(f"caching resource {url}")
        filename = f"{name}-{fingerprint(content)}{ext}"
        atomic_write(write_dir / filename, content)
        self.index.record(write_dir / filename)
        self.stats.written += 1
        return posixpath.join(prefix, filename)

    def _read_cached(self, filepath: Path, parse_json: bool) -> Any:
        if parse_json:
            return json.loads(filepath.read_bytes().decode("utf-8"))
        return None

    async def mirror(self, url: str, relative_path: str, parse_json: bool = False) -> Any:
        """Copy ``url`` to ``<outdir>/<relative_path>`` verbatim.

        A 404 is skipped with a warning and returns None. With ``parse_json``
        the (fetched or cached) content is returned decoded.
        """
        filepath = self.config.outdir / relative_path.lstrip("/")
        existing = self._existing(filepath.parent, filepath.stem, filepath.suffix)
        # writes always go to the verbatim path, a matched artifact is only read
        cached_path = filepath.parent / existing if existing else None
        if cached_path and not self.config.refresh:
            logger.info(f"reusing cached file {cached_path}")
            self.stats.reused += 1
            return self._read_cached(cached_path, parse_json)

        try:
            resource = await self.fetcher.fetch(url, SINGLE_ATTEMPT if existing else None)
        except NotFound:
            logger.warning(f"url not found: {url}")
            self.stats.not_found += 1
            if cached_path:
                return self._read_cached(cached_path, parse_json)
            return None
        except FetchFailure as e:
            if not cached_path:
                raise
            logger.warning(f"failed to cache {e}; reusing cached file {cached_path}")
            self.stats.stale += 1
            return self._read_cached(cached_path, parse_json)

        logger.info(f"fetched and cached url: {url}")
        atomic_write(filepath, resource.content)
        self.index.record(filepath)
        self.stats.written += 1
        if parse_json:
            return json.loads(resource.text())
        return None


# --- Content transforms ---

class EmbedCssUrls:
    """Inline every ``url(...)`` of a stylesheet as a base64 data URI.

    Sub-resources are fetched with the caller's retry policy. Once that
    gives up, or on a 404, FetchFailure is raised so no half-inlined
    stylesheet gets written.
    """

    def __init__(self, fetcher: Fetcher):
        self.fetcher = fetcher

    def _media_type(self, resource: FetchedResource) -> str:
        if resource.content_type:
            return resource.content_type.split(";")[0].strip()
        logger.warning(f"no content-type header for {resource.url}")
        guessed, _ = mimetypes.guess_type(urlparse(resource.url).path)
        return guessed or "application/octet-stream"

    async def __call__(self, url: str, content: bytes, policy: Optional[RetryPolicy] = None) -> bytes:
        text = content.decode("utf-8")
        references = list(dict.fromkeys(CSS_URL_RE.findall(text)))
        for reference in references:
            target = reference.strip().strip("\"'")
            if not target or target.startswith(("#", "data:")):
                continue
            resolved = urljoin(url, target)
            try:
                resource = await self.fetcher.fetch(resolved, policy)
            except NotFound as e:
                raise FetchFailure(resolved, status=404, reason=f"bad status code: 404 in {url}") from e
            data_uri = f"data:{self._media_type(resource)};base64,{base64.b64encode(resource.content).decode('ascii')}"
            text = text.replace(f"url({reference})", f"url({data_uri})")
        return text.encode("utf-8")


class RewriteOriginUrls:
    """Make absolute origin URLs in a script relative to a runtime base path variable."""

    def __init__(self, origin: str, variable: str = "worldPath"):
        self.origin = origin.rstrip("/")
        self.variable = variable

    def rewrite(self, text: str) -> str:
        for quote in ('"', "'"):
            text = text.replace(f"{quote}{self.origin}/", f"{self.variable}+{quote}")
        return text

    async def __call__(self, url: str, content: bytes, policy: Optional[RetryPolicy] = None) -> bytes:
        return self.rewrite(content.decode("utf-8")).encode("utf-8")


# --- Document rewriter ---

class DocumentRewriter:
    def __init__(
        self,
        cache: ResourceCache,
        base_url: str,
        stylesheet_transform: Optional[Transform] = None,
        script_transform: Optional[Callable[[str], Optional[Transform]]] = None,
        skip_stylesheet_hosts: Sequence[str] = (),
        remove_script_prefixes: Sequence[str] = (),
        css_prefix: str = "static/css",
        js_prefix: str = "static/js",
    ):
        self.cache = cache
        self.base_url = base_url
        self.stylesheet_transform = stylesheet_transform
        self.script_transform = script_transform
        self.skip_stylesheet_hosts = tuple(skip_stylesheet_hosts)
        self.remove_script_prefixes = tuple(remove_script_prefixes)
        self.css_prefix = css_prefix
        self.js_prefix = js_prefix

    def _is_tracking_script(self, src: str) -> bool:
        return urlparse(src).path.startswith(self.remove_script_prefixes)

    async def _rewrite(self, tag, attr: str, prefix: str, transform: Optional[Transform]) -> None:
        url = urljoin(self.base_url, tag[attr])
        try:
            tag[attr] = await self.cache.cache(url, prefix, transform)
        except NotFound:
            logger.warning(f"url not found: {url}; keeping the remote reference")
            self.cache.stats.not_found += 1

    async def rewrite(self, html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        head = soup.head or soup

        for link in head.select('link[rel~="stylesheet"][href]'):
            if any(host in link["href"] for host in self.skip_stylesheet_hosts):
                continue
            await self._rewrite(link, "href", self.css_prefix, self.stylesheet_transform)

        for script in head.select("script[src]"):
            src = script["src"]
            if self._is_tracking_script(src):
                logger.info(f"removing script {src}")
                script.decompose()
                self.cache.stats.removed_scripts += 1
                continue
            transform = self.script_transform(src) if self.script_transform else None
            await self._rewrite(script, "src", self.js_prefix, transform)

        return str(soup)


# --- Bounded phases ---

class WorkerPool:
    """Run a phase of jobs with at most ``limit`` in flight.

    All or nothing: the first failing job cancels the remaining workers and
    its exception propagates.
    """

    def __init__(self, limit: int):
        self.limit = max(1, limit)

    async def run(self, name: str, jobs: Sequence[Callable[[], Awaitable[Any]]]) -> List[Any]:
        queue: asyncio.Queue = asyncio.Queue()
        for item in enumerate(jobs):
            queue.put_nowait(item)
        results: List[Any] = [None] * len(jobs)
        started = time.monotonic()
        logger.info(f"starting phase {name}: {len(jobs)} jobs")

        async def worker():
            while True:
                try:
                    index, job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await job()

        workers = [asyncio.ensure_future(worker()) for _ in range(min(self.limit, len(jobs)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.error(f"phase {name} aborted")
            raise

        logger.info(f"finished phase {name} in {time.monotonic() - started:.2f}s")
        return results
