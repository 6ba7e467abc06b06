"""HTTP downloader for remote source videos and background music.

Architecture Pattern:
    Simple HTTP client wrapper, no retry logic (retries are owned by the
    workflow executor's per-sub-step policy). Downloads are streamed to a
    temporary ``.part`` file and renamed on success, so a partially written
    file is never mistaken for a finished download on resume.

Dependencies:
    - httpx: Async HTTP client library

Usage:
    downloader = HttpDownloader()
    path = await downloader.download("https://example.com/a.mp4", Path("/ws/jobs/1/sources/a.mp4"))
    await downloader.close()
"""

import asyncio
import contextlib
from pathlib import Path

import httpx

from cutflow.exceptions import JobCancelledError
from cutflow.utils.logging import get_logger
from cutflow.utils.media_commands import convert_media_url

log = get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024


class HttpDownloader:
    """Stream remote files to local disk.

    Attributes:
        client: Shared async HTTP client (follows redirects).

    Example:
        >>> downloader = HttpDownloader(timeout=120.0)
        >>> await downloader.download("gs://bucket/clip.mp4", Path("clip.mp4"))
        PosixPath('clip.mp4')
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 300.0) -> None:
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30.0), follow_redirects=True
        )

    async def download(
        self,
        url: str,
        destination: Path,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Path:
        """Download ``url`` to ``destination``.

        ``gs://`` references are converted to their public HTTPS form.

        Raises:
            httpx.HTTPStatusError: If the server returns an error status
            httpx.TransportError: If the connection fails
            JobCancelledError: If ``cancel_event`` is set mid-download
        """
        source = convert_media_url(url)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        written = 0

        try:
            async with self.client.stream("GET", source) as response:
                response.raise_for_status()
                # Sync writes keep chunk order; chunks are bounded to 1 MB
                with open(partial, "wb") as f:  # noqa: ASYNC230
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise JobCancelledError()
                        f.write(chunk)
                        written += len(chunk)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                partial.unlink()
            raise

        partial.replace(destination)
        log.info("download_completed", url=source, path=str(destination), size=written)
        return destination

    async def close(self) -> None:
        await self.client.aclose()
