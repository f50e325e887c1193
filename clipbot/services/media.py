"""
Media Acquisition - YouTube and attachment downloads into the Clip Store
"""
import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import aiohttp
import yt_dlp

from clipbot.exceptions import InvalidSourceError, TransferError
from clipbot.services.clip_store import ClipStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int], Awaitable[None]]

UPLOAD_EXTENSIONS = (".mp3", ".wav", ".ogg", ".m4a", ".flac")
YOUTUBE_EXTENSION = ".mp3"

_YOUTUBE_DOMAINS = ("youtube.com", "youtu.be", "music.youtube.com")
_VIDEO_ID_PATTERN = re.compile(
    r"(?:v=|/embed/|/shorts/|/v/|youtu\.be/)([0-9A-Za-z_-]{11})(?![0-9A-Za-z_-])"
)


@dataclass
class MediaInfo:
    """Probed metadata for a remote video."""
    video_id: str
    title: str
    stream_url: str
    duration_seconds: int | None = None
    content_length: int | None = None
    http_headers: dict[str, str] | None = None


@dataclass
class AcquiredClip:
    """Result of a successful acquisition."""
    name: str
    path: Path
    size: int
    title: str | None = None
    duration_seconds: int | None = None


class ProgressThrottle:
    """Turns byte counts into percents, emitting only every `step` percent."""

    def __init__(self, step: int = 25):
        self.step = step
        self._emitted: set[int] = set()

    def update(self, downloaded: int, total: int | None) -> int | None:
        if not total or total <= 0:
            return None
        percent = min(100, round(downloaded / total * 100))
        if percent % self.step != 0 or percent in self._emitted:
            return None
        self._emitted.add(percent)
        return percent


class MediaService:
    """Fetches remote media and stores it under the Clip Store's naming scheme."""

    CHUNK_SIZE = 64 * 1024
    PROBE_TIMEOUT = 25.0

    def __init__(
        self,
        store: ClipStore,
        cookies_path: str | None = None,
        max_upload_bytes: int = 25 * 1024 * 1024,
    ):
        self.store = store
        self.max_upload_bytes = max_upload_bytes

        # yt-dlp blocks, keep it off the event loop
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="YTDLWorker")

        self._ydl_opts: dict[str, Any] = {
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "ignoreerrors": False,
            "logtostderr": False,
            "noplaylist": True,
        }
        if cookies_path:
            self._ydl_opts["cookiefile"] = cookies_path

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    # ==================== VALIDATION ====================

    def parse_url(self, url: str) -> str | None:
        """Return the YouTube video id for a URL, or None if it isn't one."""
        if not url or not any(domain in url for domain in _YOUTUBE_DOMAINS):
            return None
        match = _VIDEO_ID_PATTERN.search(url)
        return match.group(1) if match else None

    def validate_attachment(self, attachment) -> str:
        """Check an uploaded file and return its lower-cased extension."""
        extension = Path(attachment.filename).suffix.lower()
        if extension not in UPLOAD_EXTENSIONS:
            raise InvalidSourceError(
                f"Invalid file type! Supported formats: {', '.join(UPLOAD_EXTENSIONS)}"
            )
        if attachment.size > self.max_upload_bytes:
            raise InvalidSourceError(
                f"File too large! Maximum size is {self.max_upload_bytes // (1024 * 1024)}MB."
            )
        return extension

    # ==================== PROBE ====================

    async def probe(self, url: str) -> MediaInfo:
        """Resolve title, duration and an audio-only stream for a video URL."""
        loop = asyncio.get_running_loop()

        def extract():
            with yt_dlp.YoutubeDL(self._ydl_opts) as ydl:
                return ydl.extract_info(url, download=False)

        try:
            info = await asyncio.wait_for(
                loop.run_in_executor(self.executor, extract),
                timeout=self.PROBE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise TransferError("Timed out while fetching video info") from None
        except yt_dlp.utils.DownloadError as e:
            raise TransferError(f"Could not fetch video info: {e}") from e

        if not info or not info.get("url"):
            raise TransferError("No audio stream available for this video")

        duration = info.get("duration")
        return MediaInfo(
            video_id=info.get("id") or self.parse_url(url) or "",
            title=info.get("title") or "Unknown",
            stream_url=info["url"],
            duration_seconds=int(duration) if duration else None,
            content_length=info.get("filesize") or info.get("filesize_approx"),
            http_headers=info.get("http_headers"),
        )

    # ==================== ACQUISITION ====================

    async def acquire_from_url(
        self,
        name: str,
        url: str,
        on_progress: ProgressListener | None = None,
        media: MediaInfo | None = None,
    ) -> AcquiredClip:
        """Download the audio of a YouTube video as clip `name`."""
        if self.parse_url(url) is None:
            raise InvalidSourceError("Invalid YouTube URL provided!")

        with self.store.reserve(name):
            if media is None:
                media = await self.probe(url)
            path = self.store.path_for(name, YOUTUBE_EXTENSION)
            size = await self._stream_to_file(
                media.stream_url,
                path,
                total=media.content_length,
                headers=media.http_headers,
                on_progress=on_progress,
            )

        logger.info(f"Added sound {name!r} from {url} ({size} bytes)")
        return AcquiredClip(
            name=name,
            path=path,
            size=size,
            title=media.title,
            duration_seconds=media.duration_seconds,
        )

    async def acquire_from_attachment(
        self,
        name: str,
        attachment,
        on_progress: ProgressListener | None = None,
    ) -> AcquiredClip:
        """Store a Discord attachment as clip `name`."""
        extension = self.validate_attachment(attachment)

        with self.store.reserve(name):
            path = self.store.path_for(name, extension)
            size = await self._stream_to_file(
                attachment.url,
                path,
                total=attachment.size,
                on_progress=on_progress,
            )

        logger.info(f"Uploaded sound {name!r} from {attachment.filename} ({size} bytes)")
        return AcquiredClip(name=name, path=path, size=size, title=attachment.filename)

    async def _stream_to_file(
        self,
        url: str,
        path: Path,
        total: int | None = None,
        headers: dict[str, str] | None = None,
        on_progress: ProgressListener | None = None,
    ) -> int:
        """Stream a URL into `path`. Nothing is left behind on failure."""
        throttle = ProgressThrottle()
        downloaded = 0
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=10, sock_read=30)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=headers) as resp:
                    if resp.status != 200:
                        raise TransferError(f"Failed to download file: HTTP {resp.status}")
                    if not total:
                        total = resp.content_length

                    with open(path, "wb") as fh:
                        async for chunk in resp.content.iter_chunked(self.CHUNK_SIZE):
                            fh.write(chunk)
                            downloaded += len(chunk)
                            percent = throttle.update(downloaded, total)
                            if percent is not None and on_progress:
                                await self._notify(on_progress, percent)
        except (Exception, asyncio.CancelledError) as e:
            self._discard_partial(path)
            if isinstance(e, (TransferError, asyncio.CancelledError)):
                raise
            if isinstance(e, aiohttp.ClientError):
                raise TransferError(f"Failed to download audio: {e}") from e
            if isinstance(e, OSError):
                raise TransferError(f"Failed to save the audio file: {e}") from e
            raise TransferError(f"Download failed: {e}") from e

        return downloaded

    async def _notify(self, on_progress: ProgressListener, percent: int):
        # Progress is best effort
        try:
            await on_progress(percent)
        except Exception as e:
            logger.debug(f"Progress update failed at {percent}%: {e}")

    def _discard_partial(self, path: Path):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error cleaning up partial file {path}: {e}")
