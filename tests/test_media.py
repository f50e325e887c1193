import asyncio
from types import SimpleNamespace

import pytest

import clipbot.services.media as media_mod
from clipbot.exceptions import ClipExistsError, InvalidSourceError, TransferError
from clipbot.services.media import MediaInfo, MediaService, ProgressThrottle

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class FakeContent:
    def __init__(self, chunks, fail_after=None, gate=None):
        self.chunks = chunks
        self.fail_after = fail_after
        self.gate = gate

    async def iter_chunked(self, size):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise media_mod.aiohttp.ClientPayloadError("connection reset")
            if self.gate is not None and index == 1:
                await self.gate.wait()
            yield chunk


class FakeHTTPResponse:
    def __init__(self, status=200, chunks=(), fail_after=None, gate=None):
        self.status = status
        self.content_length = sum(len(c) for c in chunks)
        self.content = FakeContent(list(chunks), fail_after, gate)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def fake_session_factory(responses):
    """ClientSession stand-in that serves queued responses in order."""
    requested = []

    class FakeClientSession:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def get(self, url, headers=None):
            requested.append(url)
            return responses.pop(0)

    FakeClientSession.requested = requested
    return FakeClientSession


@pytest.fixture
def service(store):
    return MediaService(store, max_upload_bytes=1024)


def media_info(content_length=None, title="Never Gonna Give You Up", duration=213):
    return MediaInfo(
        video_id="dQw4w9WgXcQ",
        title=title,
        stream_url="https://media.example/audio",
        duration_seconds=duration,
        content_length=content_length,
    )


def patch_probe(monkeypatch, service, info):
    async def probe(url):
        return info

    monkeypatch.setattr(service, "probe", probe)


# ==================== VALIDATION ====================


@pytest.mark.parametrize(
    "url, video_id",
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtube.com/watch?feature=share&v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?t=42", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://music.youtube.com/watch?v=dQw4w9WgXcQ&list=RD", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/embed/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ],
)
def test_parse_url_accepts_video_links(service, url, video_id):
    assert service.parse_url(url) == video_id


@pytest.mark.parametrize(
    "url",
    [
        "",
        "not a url",
        "https://vimeo.com/123456789",
        "https://www.youtube.com/playlist?list=PL1234567890",
        "https://www.youtube.com/watch?v=short",
        "https://open.spotify.com/track/dQw4w9WgXcQ",
    ],
)
def test_parse_url_rejects_everything_else(service, url):
    assert service.parse_url(url) is None


def test_validate_attachment(service):
    ok = SimpleNamespace(filename="Horn.MP3", size=512, url="https://cdn/horn.mp3")
    assert service.validate_attachment(ok) == ".mp3"

    with pytest.raises(InvalidSourceError, match="Invalid file type"):
        service.validate_attachment(SimpleNamespace(filename="virus.exe", size=10, url=""))

    with pytest.raises(InvalidSourceError, match="too large"):
        service.validate_attachment(SimpleNamespace(filename="big.wav", size=4096, url=""))


def test_progress_throttle_emits_quarter_steps_once():
    throttle = ProgressThrottle()
    emitted = [throttle.update(done, 100) for done in range(0, 101, 5)]
    assert [p for p in emitted if p is not None] == [0, 25, 50, 75, 100]
    assert throttle.update(100, 100) is None


def test_progress_throttle_needs_a_total():
    assert ProgressThrottle().update(10, None) is None
    assert ProgressThrottle().update(10, 0) is None


# ==================== ACQUISITION ====================


@pytest.mark.asyncio
async def test_add_from_url_creates_mp3_clip(service, store, monkeypatch):
    chunks = [b"a" * 100] * 4
    session_cls = fake_session_factory([FakeHTTPResponse(chunks=chunks)])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", session_cls)
    patch_probe(monkeypatch, service, media_info(content_length=400))

    progress = []

    async def on_progress(percent):
        progress.append(percent)

    assert not store.exists("foo")
    clip = await service.acquire_from_url("foo", VIDEO_URL, on_progress=on_progress)

    assert store.exists("foo")
    assert store.info("foo").format == "MP3"
    assert clip.size == 400
    assert clip.title == "Never Gonna Give You Up"
    assert clip.duration_seconds == 213
    assert store.resolve_path("foo") == clip.path
    assert progress == [25, 50, 75, 100]
    assert session_cls.requested == ["https://media.example/audio"]
    assert not store.is_reserved("foo")


@pytest.mark.asyncio
async def test_progress_listener_failure_does_not_abort_download(service, store, monkeypatch):
    session_cls = fake_session_factory([FakeHTTPResponse(chunks=[b"a" * 50, b"b" * 50])])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", session_cls)
    patch_probe(monkeypatch, service, media_info(content_length=100))

    async def on_progress(percent):
        raise RuntimeError("rate limited")

    await service.acquire_from_url("steady", VIDEO_URL, on_progress=on_progress)
    assert store.exists("steady")


@pytest.mark.asyncio
async def test_invalid_url_is_rejected_before_any_io(service, store, monkeypatch):
    async def probe(url):
        raise AssertionError("probe must not run")

    monkeypatch.setattr(service, "probe", probe)
    with pytest.raises(InvalidSourceError):
        await service.acquire_from_url("foo", "https://example.com/video.mp4")
    assert store.list() == []


@pytest.mark.asyncio
async def test_interrupted_transfer_leaves_no_partial_file(service, store, monkeypatch):
    response = FakeHTTPResponse(chunks=[b"a" * 100] * 4, fail_after=2)
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", fake_session_factory([response]))
    patch_probe(monkeypatch, service, media_info(content_length=400))

    with pytest.raises(TransferError, match="Failed to download audio"):
        await service.acquire_from_url("foo", VIDEO_URL)

    assert not store.exists("foo")
    assert not store.path_for("foo", ".mp3").exists()
    assert not store.is_reserved("foo")


@pytest.mark.asyncio
async def test_http_error_status_is_a_transfer_error(service, store, monkeypatch):
    response = FakeHTTPResponse(status=403)
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", fake_session_factory([response]))
    patch_probe(monkeypatch, service, media_info())

    with pytest.raises(TransferError, match="HTTP 403"):
        await service.acquire_from_url("foo", VIDEO_URL)
    assert store.list() == []


@pytest.mark.asyncio
async def test_write_failure_cleans_up(service, store, monkeypatch):
    response = FakeHTTPResponse(chunks=[b"a" * 10])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", fake_session_factory([response]))
    patch_probe(monkeypatch, service, media_info())

    real_open = open

    class FailingFile:
        def __init__(self, path):
            self._fh = real_open(path, "wb")

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self._fh.close()
            return False

        def write(self, data):
            self._fh.write(data)
            raise OSError(28, "No space left on device")

    monkeypatch.setattr(media_mod, "open", lambda path, mode: FailingFile(path), raising=False)

    with pytest.raises(TransferError, match="Failed to save"):
        await service.acquire_from_url("foo", VIDEO_URL)
    assert not store.path_for("foo", ".mp3").exists()


@pytest.mark.asyncio
async def test_concurrent_adds_for_same_name_only_one_wins(service, store, monkeypatch):
    gate = asyncio.Event()
    first = FakeHTTPResponse(chunks=[b"1" * 10, b"1" * 10], gate=gate)
    second = FakeHTTPResponse(chunks=[b"2" * 10])
    session_cls = fake_session_factory([first, second])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", session_cls)
    patch_probe(monkeypatch, service, media_info())

    winner = asyncio.create_task(service.acquire_from_url("baz", VIDEO_URL))
    # let the first download start and block mid-stream
    while not session_cls.requested:
        await asyncio.sleep(0)

    with pytest.raises(ClipExistsError):
        await service.acquire_from_url("baz", "https://youtu.be/dQw4w9WgXcQ")

    gate.set()
    clip = await winner

    assert store.list() == ["baz"]
    assert clip.path.read_bytes() == b"1" * 20
    assert len(session_cls.requested) == 1


@pytest.mark.asyncio
async def test_clip_cannot_be_deleted_mid_download(service, store, monkeypatch):
    gate = asyncio.Event()
    response = FakeHTTPResponse(chunks=[b"1" * 10, b"1" * 10], gate=gate)
    session_cls = fake_session_factory([response])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", session_cls)
    patch_probe(monkeypatch, service, media_info())

    download = asyncio.create_task(service.acquire_from_url("baz", VIDEO_URL))
    while not session_cls.requested:
        await asyncio.sleep(0)

    assert store.delete("baz") is False

    gate.set()
    clip = await download
    assert clip.size == 20
    assert store.exists("baz")


@pytest.mark.asyncio
async def test_upload_keeps_original_extension(service, store, monkeypatch):
    response = FakeHTTPResponse(chunks=[b"RIFF" + b"0" * 96])
    session_cls = fake_session_factory([response])
    monkeypatch.setattr(media_mod.aiohttp, "ClientSession", session_cls)
    attachment = SimpleNamespace(filename="Bell.WAV", size=100, url="https://cdn.example/bell.wav")

    clip = await service.acquire_from_attachment("door bell", attachment)

    assert clip.path.name == "door_bell.wav"
    assert store.info("door bell").format == "WAV"
    assert session_cls.requested == ["https://cdn.example/bell.wav"]


@pytest.mark.asyncio
async def test_upload_rejects_duplicate_name(service, store, monkeypatch):
    (store.sounds_dir / "bell.mp3").write_bytes(b"old")
    attachment = SimpleNamespace(filename="bell.ogg", size=10, url="https://cdn.example/bell.ogg")

    with pytest.raises(ClipExistsError):
        await service.acquire_from_attachment("bell", attachment)
    assert (store.sounds_dir / "bell.mp3").read_bytes() == b"old"
    assert not (store.sounds_dir / "bell.ogg").exists()


@pytest.mark.asyncio
async def test_probe_maps_ytdlp_info(service, monkeypatch):
    class FakeYDL:
        def __init__(self, opts):
            self.opts = opts

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def extract_info(self, url, download=True):
            assert download is False
            return {
                "id": "dQw4w9WgXcQ",
                "title": "Rick",
                "url": "https://rr.googlevideo.com/audio",
                "duration": 212.9,
                "filesize": 3400000,
                "http_headers": {"User-Agent": "yt"},
            }

    monkeypatch.setattr(media_mod.yt_dlp, "YoutubeDL", FakeYDL)
    info = await service.probe(VIDEO_URL)
    assert info.title == "Rick"
    assert info.stream_url == "https://rr.googlevideo.com/audio"
    assert info.duration_seconds == 212
    assert info.content_length == 3400000
    assert info.http_headers == {"User-Agent": "yt"}


@pytest.mark.asyncio
async def test_probe_failure_is_a_transfer_error(service, monkeypatch):
    class BrokenYDL:
        def __init__(self, opts):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def extract_info(self, url, download=True):
            raise media_mod.yt_dlp.utils.DownloadError("Video unavailable")

    monkeypatch.setattr(media_mod.yt_dlp, "YoutubeDL", BrokenYDL)
    with pytest.raises(TransferError, match="Video unavailable"):
        await service.probe(VIDEO_URL)
