"""yt-dlp backed metadata lookup and source stream fetching."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import yt_dlp
from yt_dlp.utils import DownloadError

from .config import VIDEO_QUALITY_LABELS
from .errors import CollaboratorError

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
STREAM_CHUNK_SIZE = 64 * 1024

YDL_BASE_OPTIONS: dict[str, Any] = {
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "noplaylist": True,
    "cachedir": False,
}


@dataclass
class Thumbnail:
    url: str
    width: int = 0
    height: int = 0


@dataclass
class StreamDescriptor:
    itag: int | str
    mime_type: str
    has_video: bool
    has_audio: bool
    url: str | None = None
    quality_label: str | None = None
    audio_quality: str | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    bitrate: int | None = None
    audio_bitrate: float | None = None
    content_length: int | None = None
    http_headers: dict[str, str] = field(default_factory=dict)

    @property
    def resolution(self) -> int:
        """Shorter side in pixels; what a "720p" label refers to."""
        if self.width and self.height:
            return min(self.width, self.height)
        return self.height or 0

    @property
    def kind(self) -> str:
        if self.has_video and self.has_audio:
            return "muxed"
        return "video" if self.has_video else "audio"

    @classmethod
    def from_ytdlp(cls, fmt: dict[str, Any]) -> "StreamDescriptor":
        vcodec = fmt.get("vcodec") or "none"
        acodec = fmt.get("acodec") or "none"
        has_video = vcodec != "none"
        has_audio = acodec != "none"

        format_id = str(fmt.get("format_id", ""))
        itag: int | str = int(format_id) if format_id.isdigit() else format_id

        ext = fmt.get("ext") or "unknown"
        codecs = ", ".join(c for c in (vcodec, acodec) if c != "none")
        mime_type = f"{'video' if has_video else 'audio'}/{ext}"
        if codecs:
            mime_type += f'; codecs="{codecs}"'

        width = fmt.get("width")
        height = fmt.get("height")
        fps = fmt.get("fps")
        short_side = min(width, height) if width and height else height
        quality_label = None
        if has_video and short_side:
            # Same shape YouTube uses: 720p, 1080p60; portrait is labelled by its width
            quality_label = f"{short_side}p" + (f"{int(fps)}" if fps and fps > 30 else "")

        tbr = fmt.get("tbr")
        return cls(
            itag=itag,
            mime_type=mime_type,
            has_video=has_video,
            has_audio=has_audio,
            url=fmt.get("url"),
            quality_label=quality_label,
            audio_quality=fmt.get("format_note") if has_audio and not has_video else None,
            width=width,
            height=height,
            fps=fps,
            bitrate=int(tbr * 1000) if tbr else None,
            audio_bitrate=fmt.get("abr"),
            content_length=fmt.get("filesize") or fmt.get("filesize_approx"),
            http_headers={str(k): str(v) for k, v in (fmt.get("http_headers") or {}).items()},
        )


@dataclass
class VideoInfo:
    video_id: str
    title: str
    duration: int = 0
    thumbnails: list[Thumbnail] = field(default_factory=list)
    channel: str | None = None
    view_count: int | None = None
    formats: list[StreamDescriptor] = field(default_factory=list)

    @property
    def best_thumbnail(self) -> str | None:
        if not self.thumbnails:
            return None
        return max(self.thumbnails, key=lambda t: t.width or 0).url

    @classmethod
    def from_ytdlp(cls, video_id: str, info: dict[str, Any]) -> "VideoInfo":
        thumbnails = [
            Thumbnail(url=t["url"], width=t.get("width") or 0, height=t.get("height") or 0)
            for t in info.get("thumbnails") or []
            if t.get("url")
        ]
        if not thumbnails and info.get("thumbnail"):
            thumbnails.append(Thumbnail(url=info["thumbnail"]))

        formats = [
            StreamDescriptor.from_ytdlp(f)
            for f in info.get("formats") or []
            if (f.get("vcodec") or "none") != "none" or (f.get("acodec") or "none") != "none"
        ]
        return cls(
            video_id=video_id,
            title=info.get("title") or video_id,
            duration=int(info.get("duration") or 0),
            thumbnails=thumbnails,
            channel=info.get("channel") or info.get("uploader"),
            view_count=info.get("view_count"),
            formats=formats,
        )


# Format selection


def filter_formats(formats: list[StreamDescriptor], kind: str) -> list[StreamDescriptor]:
    predicates = {
        "audioonly": lambda f: f.has_audio and not f.has_video,
        "videoonly": lambda f: f.has_video and not f.has_audio,
        "audioandvideo": lambda f: f.has_video and f.has_audio,
        "video": lambda f: f.has_video,
        "audio": lambda f: f.has_audio,
    }
    if kind not in predicates:
        raise ValueError(f"Unknown format filter: {kind}")
    return [f for f in formats if predicates[kind](f)]


def _audio_rank(fmt: StreamDescriptor) -> float:
    return fmt.audio_bitrate or (fmt.bitrate or 0) / 1000


def _video_rank(fmt: StreamDescriptor) -> tuple:
    return (fmt.resolution, fmt.fps or 0, fmt.bitrate or 0)


def best_first(formats: list[StreamDescriptor]) -> list[StreamDescriptor]:
    """Video formats ordered highest quality first (yt-dlp lists them worst first)."""
    return sorted(formats, key=_video_rank, reverse=True)


def choose_audio_format(formats: list[StreamDescriptor], quality: str) -> StreamDescriptor | None:
    # medium and high both take the best source; only the output bitrate differs
    candidates = filter_formats(formats, "audioonly") or filter_formats(formats, "audio")
    if not candidates:
        return None
    if quality == "low":
        return min(candidates, key=_audio_rank)
    return max(candidates, key=_audio_rank)


def choose_video_format(formats: list[StreamDescriptor], quality: str) -> StreamDescriptor | None:
    with_video = filter_formats(formats, "video")
    if quality in VIDEO_QUALITY_LABELS:
        resolution = int(quality[:-1])
        matching = [f for f in with_video if f.resolution == resolution]
        if not matching:
            return None
        return max(matching, key=lambda f: (f.has_audio, f.mime_type.startswith("video/mp4"), f.bitrate or 0))

    muxed = filter_formats(with_video, "audioandvideo")
    candidates = muxed or with_video
    if not candidates:
        return None
    return max(candidates, key=_video_rank)


class YouTubeClient:
    """Metadata and source stream access through yt-dlp and httpx."""

    def __init__(
        self,
        timeout: float = 60.0,
        cookie_file: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport
        self._ydl_opts = dict(YDL_BASE_OPTIONS)
        if cookie_file:
            self._ydl_opts["cookiefile"] = cookie_file

    def _extract(self, video_id: str) -> dict[str, Any]:
        with yt_dlp.YoutubeDL(self._ydl_opts) as ydl:
            return ydl.extract_info(WATCH_URL.format(video_id=video_id), download=False)

    async def get_info(self, video_id: str) -> VideoInfo:
        logger.debug("yt-dlp extract_info video_id=%s", video_id)
        try:
            info = await asyncio.wait_for(asyncio.to_thread(self._extract, video_id), self.timeout)
        except asyncio.TimeoutError as exc:
            raise CollaboratorError(
                "Metadata lookup timed out", f"No response from YouTube after {self.timeout:g}s"
            ) from exc
        except DownloadError as exc:
            raise CollaboratorError("Metadata lookup failed", str(exc).strip()) from exc
        except Exception as exc:
            raise CollaboratorError("Metadata lookup failed", str(exc)) from exc

        if not info:
            raise CollaboratorError("Metadata lookup failed", f"No metadata returned for {video_id}")
        return VideoInfo.from_ytdlp(video_id, info)

    async def open_stream(self, fmt: StreamDescriptor) -> AsyncIterator[bytes]:
        """Yield the raw bytes of one format straight from the source CDN."""
        if not fmt.url:
            raise CollaboratorError("Stream unavailable", f"Format {fmt.itag} has no source URL")

        timeout = httpx.Timeout(self.timeout, connect=min(self.timeout, 15.0))
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport) as client:
                async with client.stream("GET", fmt.url, headers=fmt.http_headers) as response:
                    if response.status_code >= 400:
                        raise CollaboratorError(
                            "Stream request failed",
                            f"Source responded with HTTP {response.status_code}",
                        )
                    async for chunk in response.aiter_bytes(STREAM_CHUNK_SIZE):
                        yield chunk
        except httpx.HTTPError as exc:
            raise CollaboratorError("Stream request failed", str(exc) or type(exc).__name__) from exc
