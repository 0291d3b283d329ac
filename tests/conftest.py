"""Shared fixtures and fake collaborators for tubegate tests."""

import pytest
from fastapi.testclient import TestClient

from tubegate.config import Settings
from tubegate.errors import CollaboratorError
from tubegate.server import create_app
from tubegate.youtube import StreamDescriptor, Thumbnail, VideoInfo

VIDEO_ID = "dQw4w9WgXcQ"


def make_info(video_id: str = VIDEO_ID) -> VideoInfo:
    return VideoInfo(
        video_id=video_id,
        title="Rick Astley - Never Gonna Give You Up (Official Video)",
        duration=212,
        thumbnails=[
            Thumbnail(url="https://i.ytimg.com/vi/small.jpg", width=120, height=90),
            Thumbnail(url="https://i.ytimg.com/vi/maxres.jpg", width=1280, height=720),
            Thumbnail(url="https://i.ytimg.com/vi/medium.jpg", width=320, height=180),
        ],
        channel="Rick Astley",
        view_count=1_500_000_000,
        formats=[
            StreamDescriptor(itag=249, mime_type='audio/webm; codecs="opus"', has_video=False, has_audio=True,
                             url="https://cdn.example/249", audio_quality="low", audio_bitrate=50.0,
                             content_length=1_300_000),
            StreamDescriptor(itag=140, mime_type='audio/m4a; codecs="mp4a.40.2"', has_video=False, has_audio=True,
                             url="https://cdn.example/140", audio_quality="medium", audio_bitrate=129.5,
                             content_length=3_433_514),
            StreamDescriptor(itag=251, mime_type='audio/webm; codecs="opus"', has_video=False, has_audio=True,
                             url="https://cdn.example/251", audio_quality="medium", audio_bitrate=135.2),
            StreamDescriptor(itag=160, mime_type='video/mp4; codecs="avc1.4d400c"', has_video=True,
                             has_audio=False, url="https://cdn.example/160", quality_label="144p",
                             width=256, height=144, fps=25, bitrate=110_000),
            StreamDescriptor(itag=134, mime_type='video/mp4; codecs="avc1.4d401e"', has_video=True,
                             has_audio=False, url="https://cdn.example/134", quality_label="360p",
                             width=640, height=360, fps=25, bitrate=600_000),
            StreamDescriptor(itag=18, mime_type='video/mp4; codecs="avc1.42001E, mp4a.40.2"', has_video=True,
                             has_audio=True, url="https://cdn.example/18", quality_label="360p",
                             width=640, height=360, fps=25, bitrate=500_000, content_length=11_000_000),
            StreamDescriptor(itag=136, mime_type='video/mp4; codecs="avc1.4d401f"', has_video=True,
                             has_audio=False, url="https://cdn.example/136", quality_label="720p",
                             width=1280, height=720, fps=25, bitrate=1_500_000),
            StreamDescriptor(itag=22, mime_type='video/mp4; codecs="avc1.64001F, mp4a.40.2"', has_video=True,
                             has_audio=True, url="https://cdn.example/22", quality_label="720p",
                             width=1280, height=720, fps=25, bitrate=1_200_000),
            StreamDescriptor(itag=137, mime_type='video/mp4; codecs="avc1.640028"', has_video=True,
                             has_audio=False, url="https://cdn.example/137", quality_label="1080p",
                             width=1920, height=1080, fps=25, bitrate=4_000_000),
            StreamDescriptor(itag=248, mime_type='video/webm; codecs="vp9"', has_video=True,
                             has_audio=False, url="https://cdn.example/248", quality_label="1080p",
                             width=1920, height=1080, fps=25, bitrate=2_600_000),
        ],
    )


class FakeYouTube:
    """Stands in for YouTubeClient; counts calls and records chosen formats."""

    def __init__(self, info: VideoInfo | None = None, chunks=(b"chunk-1|", b"chunk-2|", b"chunk-3"), error=None):
        self.info = info or make_info()
        self.chunks = list(chunks)
        self.error = error
        self.info_calls = 0
        self.streamed: list[StreamDescriptor] = []

    async def get_info(self, video_id: str) -> VideoInfo:
        self.info_calls += 1
        if self.error is not None:
            raise self.error
        return self.info

    async def open_stream(self, fmt: StreamDescriptor):
        self.streamed.append(fmt)
        for chunk in self.chunks:
            yield chunk


class FakeTranscoder:
    """Prefixes every chunk with "mp3:"; optionally fails after N chunks."""

    def __init__(self, fail_after: int | None = None, available: bool = True):
        self.fail_after = fail_after
        self._available = available
        self.calls = 0
        self.options = []

    def available(self) -> bool:
        return self._available

    async def transcode(self, source, options):
        self.calls += 1
        self.options.append(options)
        emitted = 0
        async for chunk in source:
            if self.fail_after is not None and emitted >= self.fail_after:
                raise CollaboratorError("Audio processing failed", "ffmpeg exited with code 1")
            emitted += 1
            yield b"mp3:" + chunk


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=tmp_path / "cache", log_level="WARNING")


@pytest.fixture
def youtube():
    return FakeYouTube()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def app(settings, youtube, transcoder):
    return create_app(settings, youtube=youtube, transcoder=transcoder)


@pytest.fixture
def client(app):
    return TestClient(app)
