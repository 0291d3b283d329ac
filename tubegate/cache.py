"""Disk cache for transcoded audio.

Entries are plain files named from ``{kind}_{video_id}_{quality}_{bitrate}``
and aged by mtime. A cache miss is filled while the client is being served:
one producer task reads the transcoded stream, appends each chunk to a
temporary file and hands the same chunk to the response. The temporary file
is renamed onto the entry path only after the stream ended cleanly, so a
lookup can never see a partial file.

If the client goes away mid-stream the producer keeps going and the entry is
still completed. If the pipeline fails the temporary file is removed and the
error is re-raised on the response side.

Chunks not yet sent to a slow client are buffered in memory without a cap.

Two concurrent misses for the same key are not coordinated: both transcode,
and whichever finishes last owns the entry.
"""

import asyncio
import contextlib
import logging
import os
import secrets
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


@dataclass(frozen=True)
class CacheKey:
    kind: str
    video_id: str
    quality: str
    bitrate: str

    @property
    def filename(self) -> str:
        return f"{self.kind}_{self.video_id}_{self.quality}_{self.bitrate}.mp3"


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


_DONE = object()


class TeeStream:
    """Async iterator over a stream that is also being written to a cache file."""

    def __init__(self, source: AsyncIterator[bytes], path: Path):
        self.path = path
        self._source = source
        # Unbounded: the file sink never waits on the client, so a slow client
        # holds its undelivered share of the transcode (at most one MP3) in memory.
        self._queue: asyncio.Queue = asyncio.Queue()
        self._detached = False
        self.task = asyncio.create_task(self._produce(), name=f"cache-populate:{path.name}")

    async def _produce(self) -> None:
        tmp = self.path.with_name(f"{self.path.name}.{secrets.token_hex(4)}{PARTIAL_SUFFIX}")
        written = 0
        try:
            async with aiofiles.open(tmp, "wb") as fh:
                async for chunk in self._source:
                    await fh.write(chunk)
                    written += len(chunk)
                    self._offer(chunk)
            os.replace(tmp, self.path)
        except asyncio.CancelledError:
            _remove(tmp)
            raise
        except Exception as exc:
            _remove(tmp)
            logger.warning("cache populate failed path=%s bytes=%d error=%s", self.path.name, written, exc)
            self._offer(_Failure(exc))
            return
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

        logger.info("cache stored path=%s bytes=%d detached=%s", self.path.name, written, self._detached)
        self._offer(_DONE)

    def _offer(self, item) -> None:
        if not self._detached:
            self._queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._detached:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DONE:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.exc
        return item

    async def aclose(self) -> None:
        # The consumer is gone. Stop buffering; the producer finishes the file.
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()


def _remove(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


class AudioCache:
    def __init__(self, directory: Path, retention_seconds: float):
        self.directory = Path(directory)
        self.retention_seconds = retention_seconds
        self.directory.mkdir(parents=True, exist_ok=True)
        self._writers: set[asyncio.Task] = set()

    def path_for(self, key: CacheKey) -> Path:
        return self.directory / key.filename

    def lookup(self, key: CacheKey) -> Path | None:
        path = self.path_for(key)
        return path if path.is_file() else None

    def populate(self, key: CacheKey, stream: AsyncIterator[bytes]) -> TeeStream:
        tee = TeeStream(stream, self.path_for(key))
        self._writers.add(tee.task)
        tee.task.add_done_callback(self._writers.discard)
        return tee

    def entry_count(self) -> int:
        try:
            return sum(
                1 for entry in os.scandir(self.directory)
                if entry.is_file() and not entry.name.endswith(PARTIAL_SUFFIX)
            )
        except OSError:
            return 0

    def sweep(self, now: float | None = None) -> int:
        """Delete every entry older than the retention window.

        Partial files from interrupted writes are aged the same way. Errors on a
        single file are logged and skipped. Returns the number of files removed.
        """
        now = time.time() if now is None else now
        removed = 0
        try:
            entries = list(os.scandir(self.directory))
        except OSError as exc:
            logger.warning("cache sweep could not list %s: %s", self.directory, exc)
            return 0

        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age <= self.retention_seconds:
                    continue
                if _remove(Path(entry.path)):
                    removed += 1
                    logger.debug("cache expired path=%s age=%ds", entry.name, age)
            except OSError as exc:
                logger.warning("cache sweep skipped %s: %s", entry.name, exc)

        if removed:
            logger.info("cache sweep removed=%d dir=%s", removed, self.directory)
        return removed

    async def aclose(self) -> None:
        """Abort in-flight populates; their partial files are removed."""
        for task in list(self._writers):
            task.cancel()
        if self._writers:
            await asyncio.gather(*self._writers, return_exceptions=True)


class CacheSweeper:
    """Periodic background sweep owned by the application lifespan."""

    def __init__(self, cache: AudioCache, interval_seconds: float):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cache-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> int:
        try:
            return await asyncio.to_thread(self.cache.sweep)
        except Exception:
            logger.exception("cache sweep failed dir=%s", self.cache.directory)
            return 0

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()


async def prime(stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Pull the first chunk now so early failures surface before headers go out."""
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except BaseException:
        await _aclose(stream)
        raise

    async def body() -> AsyncIterator[bytes]:
        try:
            if first is not None:
                yield first
                async for chunk in stream:
                    yield chunk
        finally:
            await _aclose(stream)

    return body()


async def _aclose(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
