import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import SERVICE_NAME, __version__
from .cache import AudioCache, CacheSweeper
from .config import Settings, configure_logging
from .errors import install_error_handlers
from .ratelimit import RATE_LIMIT_HEADERS, RateLimitMiddleware, SlidingWindowLimiter
from .routes import router
from .transcode import FFmpegTranscoder
from .youtube import YouTubeClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    sweeper: CacheSweeper = app.state.sweeper

    removed = await sweeper.run_once()
    sweeper.start()
    logger.info(
        "%s %s listening on %s:%d cache=%s removed_on_start=%d",
        SERVICE_NAME, __version__, settings.host, settings.port, settings.cache_dir, removed,
    )
    try:
        yield
    finally:
        await sweeper.stop()
        await app.state.cache.aclose()
        logger.info("shutdown complete")


def create_app(
    settings: Settings | None = None,
    youtube: YouTubeClient | None = None,
    transcoder: FFmpegTranscoder | None = None,
    limiter: SlidingWindowLimiter | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)

    cache = AudioCache(settings.cache_dir, settings.cache_retention_seconds)
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.cache = cache
    app.state.sweeper = CacheSweeper(cache, settings.cache_sweep_interval_seconds)
    app.state.youtube = youtube or YouTubeClient(
        timeout=settings.collaborator_timeout_seconds, cookie_file=settings.cookie_file
    )
    app.state.transcoder = transcoder or FFmpegTranscoder(settings.ffmpeg_path)

    limiter = limiter or SlidingWindowLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    # Added last: CORS wraps the limiter and its 429s
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=RATE_LIMIT_HEADERS,
    )

    install_error_handlers(app, debug=settings.debug)
    app.include_router(router)
    return app
