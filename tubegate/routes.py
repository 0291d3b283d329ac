import logging
import sys
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import ValidationError as ModelError

from . import SERVICE_NAME, __version__
from .cache import AudioCache, CacheKey, prime
from .config import AudioRequest, InfoRequest, SearchRequest, VideoRequest
from .errors import CollaboratorError, NotFoundError, ValidationError
from .transcode import STUDIO_FILTERS, FFmpegTranscoder, TranscodeOptions
from .utils import content_disposition, extract_video_id, format_bytes, format_duration, sanitize_filename
from .youtube import (
    StreamDescriptor,
    YouTubeClient,
    best_first,
    choose_audio_format,
    choose_video_format,
    filter_formats,
)

logger = logging.getLogger(__name__)

router = APIRouter()

STUDIO_BITRATE = "320k"
INFO_VIDEO_FORMATS = 5


# Collaborators are read from app.state


def get_youtube(request: Request) -> YouTubeClient:
    return request.app.state.youtube


def get_transcoder(request: Request) -> FFmpegTranscoder:
    return request.app.state.transcoder


def get_cache(request: Request) -> AudioCache:
    return request.app.state.cache


# Request parsing


def require_video_id(url: str | None) -> str:
    if not url:
        raise ValidationError("YouTube URL is required")
    video_id = extract_video_id(url)
    if not video_id:
        raise ValidationError("Invalid YouTube URL")
    return video_id


def _build(model, **values):
    try:
        return model(**values)
    except ModelError as exc:
        details = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        raise ValidationError("Invalid request parameters", details) from exc


def info_request(url: str | None = Query(None)) -> InfoRequest:
    return InfoRequest(video_id=require_video_id(url))


def audio_request(
    url: str | None = Query(None),
    quality: str = Query("high"),
    bitrate: str = Query("192"),
) -> AudioRequest:
    return _build(AudioRequest, video_id=require_video_id(url), quality=quality, bitrate=bitrate)


def video_request(url: str | None = Query(None), quality: str = Query("360p")) -> VideoRequest:
    return _build(VideoRequest, video_id=require_video_id(url), quality=quality)


def search_request(q: str | None = Query(None), limit: str = Query("10")) -> SearchRequest:
    if not q or len(q) < 2:
        raise ValidationError("Search query is required (min 2 chars)")
    return _build(SearchRequest, query=q, limit=limit)


# Projections


def _size(fmt: StreamDescriptor) -> str:
    return format_bytes(fmt.content_length) if fmt.content_length else "unknown"


def audio_summary(fmt: StreamDescriptor) -> dict:
    return {
        "itag": fmt.itag,
        "quality": fmt.audio_quality or "unknown",
        "bitrate": fmt.audio_bitrate,
        "size": _size(fmt),
    }


def video_summary(fmt: StreamDescriptor) -> dict:
    return {
        "itag": fmt.itag,
        "quality": fmt.quality_label,
        "width": fmt.width,
        "height": fmt.height,
        "fps": fmt.fps,
        "size": _size(fmt),
    }


def format_details(fmt: StreamDescriptor) -> dict:
    return {
        "itag": fmt.itag,
        "mimeType": fmt.mime_type,
        "quality": fmt.quality_label or fmt.audio_quality,
        "hasVideo": fmt.has_video,
        "hasAudio": fmt.has_audio,
        "width": fmt.width,
        "height": fmt.height,
        "fps": fmt.fps,
        "bitrate": fmt.bitrate,
        "audioBitrate": fmt.audio_bitrate,
        "size": _size(fmt),
        "url": fmt.url,
    }


def _media_type(fmt: StreamDescriptor) -> tuple[str, str]:
    media_type = fmt.mime_type.split(";", 1)[0].strip()
    if not media_type.startswith("video/") or media_type == "video/unknown":
        media_type = "video/mp4"
    return media_type, media_type.split("/", 1)[1]


def _uptime(request: Request) -> float:
    return round(time.monotonic() - request.app.state.started_at, 3)


# Routes


@router.get("/")
async def index(request: Request):
    return {
        "status": "online",
        "service": SERVICE_NAME,
        "version": __version__,
        "endpoints": {
            "info": "/api/info?url=YOUTUBE_URL",
            "audio": "/api/audio?url=YOUTUBE_URL&quality=high&bitrate=192",
            "video": "/api/video?url=YOUTUBE_URL&quality=360p",
            "studio": "/api/studio?url=YOUTUBE_URL",
            "search": "/api/search?q=QUERY&limit=10",
            "formats": "/api/formats?url=YOUTUBE_URL",
        },
        "uptime": _uptime(request),
    }


@router.get("/health")
async def health(
    request: Request,
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
    cache: AudioCache = Depends(get_cache),
):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "platform": sys.platform,
        "python": sys.version.split()[0],
        "uptime": _uptime(request),
        "ffmpeg": "available" if transcoder.available() else "missing",
        "cache": {"directory": str(cache.directory), "entries": cache.entry_count()},
    }


@router.get("/api/info")
async def video_info(
    req: InfoRequest = Depends(info_request),
    youtube: YouTubeClient = Depends(get_youtube),
):
    try:
        info = await youtube.get_info(req.video_id)
    except CollaboratorError as exc:
        raise CollaboratorError("Failed to get video info", exc.message) from exc

    return {
        "success": True,
        "videoId": req.video_id,
        "title": info.title,
        "duration": info.duration,
        "durationFormatted": format_duration(info.duration),
        "thumbnail": info.best_thumbnail,
        "channel": info.channel,
        "viewCount": info.view_count,
        "audioFormats": [audio_summary(f) for f in filter_formats(info.formats, "audioonly")],
        "videoFormats": [
            video_summary(f) for f in best_first(filter_formats(info.formats, "videoonly"))[:INFO_VIDEO_FORMATS]
        ],
    }


@router.get("/api/audio")
async def audio(
    req: AudioRequest = Depends(audio_request),
    youtube: YouTubeClient = Depends(get_youtube),
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
    cache: AudioCache = Depends(get_cache),
):
    key = CacheKey("audio", req.video_id, req.quality, req.bitrate)
    cached = cache.lookup(key)
    if cached is not None:
        logger.info("cache hit key=%s", key.filename)
        return FileResponse(cached, media_type="audio/mpeg", filename=f"{req.video_id}.mp3")

    logger.info("cache miss key=%s", key.filename)
    try:
        info = await youtube.get_info(req.video_id)
        fmt = choose_audio_format(info.formats, req.quality)
        if fmt is None:
            raise NotFoundError("No audio format available")
        source = youtube.open_stream(fmt)
        transcoded = transcoder.transcode(source, TranscodeOptions(bitrate=f"{req.bitrate}k"))
        body = await prime(cache.populate(key, transcoded))
    except CollaboratorError as exc:
        raise CollaboratorError("Audio download failed", exc.message) from exc

    title = sanitize_filename(info.title) or req.video_id
    return StreamingResponse(
        body,
        media_type="audio/mpeg",
        headers={"Content-Disposition": content_disposition(f"{title}.mp3")},
    )


# Not cached: video is passed through as-is and never touches the disk cache
@router.get("/api/video")
async def video(
    req: VideoRequest = Depends(video_request),
    youtube: YouTubeClient = Depends(get_youtube),
):
    try:
        info = await youtube.get_info(req.video_id)
    except CollaboratorError as exc:
        raise CollaboratorError("Video download failed", exc.message) from exc

    fmt = choose_video_format(info.formats, req.quality)
    if fmt is None:
        raise NotFoundError("No suitable format found")
    logger.info("video stream video_id=%s quality=%s itag=%s", req.video_id, req.quality, fmt.itag)

    try:
        body = await prime(youtube.open_stream(fmt))
    except CollaboratorError as exc:
        raise CollaboratorError("Video download failed", exc.message) from exc

    media_type, extension = _media_type(fmt)
    title = sanitize_filename(info.title) or req.video_id
    headers = {"Content-Disposition": content_disposition(f"{title}.{extension}")}
    return StreamingResponse(body, media_type=media_type, headers=headers)


@router.get("/api/formats")
async def formats(
    req: InfoRequest = Depends(info_request),
    youtube: YouTubeClient = Depends(get_youtube),
):
    try:
        info = await youtube.get_info(req.video_id)
    except CollaboratorError as exc:
        raise CollaboratorError("Failed to get formats", exc.message) from exc

    return {
        "success": True,
        "videoId": req.video_id,
        "title": info.title,
        "formats": [format_details(f) for f in info.formats],
    }


@router.get("/api/studio")
async def studio(
    req: InfoRequest = Depends(info_request),
    youtube: YouTubeClient = Depends(get_youtube),
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
):
    try:
        info = await youtube.get_info(req.video_id)
        fmt = choose_audio_format(info.formats, "high")
        if fmt is None:
            raise NotFoundError("No audio format available")
        options = TranscodeOptions(bitrate=STUDIO_BITRATE, filters=STUDIO_FILTERS)
        body = await prime(transcoder.transcode(youtube.open_stream(fmt), options))
    except CollaboratorError as exc:
        raise CollaboratorError("Studio audio download failed", exc.message) from exc

    title = sanitize_filename(info.title) or req.video_id
    return StreamingResponse(
        body,
        media_type="audio/mpeg",
        headers={"Content-Disposition": content_disposition(f"{title}_studio.mp3")},
    )


@router.get("/api/search")
async def search(req: SearchRequest = Depends(search_request)):
    # Placeholder until a search backend (e.g. YouTube Data API v3) is wired in
    return {
        "success": True,
        "query": req.query,
        "limit": req.limit,
        "results": [],
        "message": "Search requires YouTube Data API v3 key",
    }
