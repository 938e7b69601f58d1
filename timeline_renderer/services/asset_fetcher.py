"""Asset fetching: remote URLs over HTTP and files from the upload area.

Each asset is written to ``<dest>.part`` and renamed into place only when it
is complete and non-empty, so a job never sees a half-written file.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from urllib.parse import urlparse

import httpx

from timeline_renderer.config import get_settings
from timeline_renderer.exceptions import (
    AssetNotFoundError,
    EmptyPayloadError,
    FetchTimeoutError,
    TransportError,
)
from timeline_renderer.schemas.timeline import MediaSource

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = {"video": ".mp4", "audio": ".mp3", "image": ".png"}


def suffix_for(source: MediaSource, kind: str = "video") -> str:
    """File suffix for a fetched asset: the URL's own, else one per media kind."""
    path = urlparse(source.url).path if source.url else source.upload_id or ""
    suffix = Path(path).suffix.lower()
    if suffix and len(suffix) <= 6 and suffix[1:].isalnum():
        return suffix
    return DEFAULT_SUFFIX.get(kind, ".bin")


def resolve_upload_path(upload_dir: str | Path, upload_id: str) -> Path:
    """Map an upload id to its file, rejecting ids that leave the upload dir.

    Raises:
        AssetNotFoundError: If the id is not a plain file name
    """
    root = Path(upload_dir).resolve()
    candidate = (root / upload_id).resolve()
    if candidate.parent != root:
        raise AssetNotFoundError(f"Invalid upload id: {upload_id}", source=upload_id)
    return candidate


class AssetFetcher:
    """Downloads timeline assets into a job's work directory."""

    def __init__(
        self,
        upload_dir: str | None = None,
        timeout_s: float | None = None,
        connect_timeout_s: float | None = None,
        chunk_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.upload_dir = upload_dir or settings.upload_dir
        self.timeout_s = timeout_s or settings.fetch_timeout_s
        self.connect_timeout_s = connect_timeout_s or settings.fetch_connect_timeout_s
        self.chunk_size = chunk_size or settings.fetch_chunk_size
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.timeout_s, connect=self.connect_timeout_s)
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport)

    async def fetch_all(self, items: list[tuple[MediaSource, Path]]) -> list[Path]:
        """Fetch every (source, dest) pair concurrently.

        All downloads run to completion, then the first failure in input
        order is raised so the reported error does not depend on timing.

        Raises:
            FetchError: The first failed asset
        """
        async with self._client() as client:
            results = await asyncio.gather(
                *(self.fetch(source, dest, client=client) for source, dest in items),
                return_exceptions=True,
            )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def fetch(
        self,
        source: MediaSource,
        dest: Path,
        client: httpx.AsyncClient | None = None,
    ) -> Path:
        """Fetch one asset to dest.

        Raises:
            AssetNotFoundError: 404 or unknown upload id
            EmptyPayloadError: Zero bytes received
            FetchTimeoutError: Download exceeded the timeout
            TransportError: Any other HTTP or I/O failure
        """
        part = dest.with_name(dest.name + ".part")
        try:
            if source.url:
                if client is None:
                    async with self._client() as own_client:
                        size = await self._download(source.url, part, own_client)
                else:
                    size = await self._download(source.url, part, client)
            else:
                size = await asyncio.to_thread(self._copy_upload, source.upload_id, part)

            if size == 0:
                raise EmptyPayloadError(source=str(source))
            part.replace(dest)
        except OSError as e:
            part.unlink(missing_ok=True)
            raise TransportError(f"Could not store asset {source}: {e}", source=str(source))
        except BaseException:
            part.unlink(missing_ok=True)
            raise

        logger.info(f"[FETCH] {source} -> {dest.name} ({size} bytes)")
        return dest

    async def _download(self, url: str, part: Path, client: httpx.AsyncClient) -> int:
        try:
            return await asyncio.wait_for(self._stream(url, part, client), timeout=self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise FetchTimeoutError(
                f"Timed out after {self.timeout_s}s fetching {url}", source=url
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Transport error fetching {url}: {e}", source=url)

    async def _stream(self, url: str, part: Path, client: httpx.AsyncClient) -> int:
        size = 0
        async with client.stream("GET", url) as response:
            if response.status_code == 404:
                raise AssetNotFoundError(source=url)
            if not response.is_success:
                raise TransportError(f"HTTP {response.status_code} fetching {url}", source=url)
            with open(part, "wb") as f:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
        return size

    def _copy_upload(self, upload_id: str, part: Path) -> int:
        path = resolve_upload_path(self.upload_dir, upload_id)
        if not path.is_file():
            raise AssetNotFoundError(f"Upload not found: {upload_id}", source=upload_id)
        shutil.copyfile(path, part)
        return part.stat().st_size
