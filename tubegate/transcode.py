import asyncio
import contextlib
import logging
import shutil
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from .errors import CollaboratorError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
STDERR_TAIL = 2000

STUDIO_FILTERS = (
    "volume=1.5",
    "aresample=48000",
    "highpass=f=80",
    "lowpass=f=16000",
    "aresample=async=1000",
)


@dataclass(frozen=True)
class TranscodeOptions:
    codec: str = "libmp3lame"
    bitrate: str = "192k"
    filters: Sequence[str] = ()
    fmt: str = "mp3"


class FFmpegTranscoder:
    """Pipes a byte stream through ffmpeg (stdin -> stdout)."""

    def __init__(self, ffmpeg_path: str | None = None):
        self.ffmpeg_path = ffmpeg_path or shutil.which("ffmpeg")

    def available(self) -> bool:
        return bool(self.ffmpeg_path)

    def build_command(self, options: TranscodeOptions) -> list[str]:
        cmd = [
            self.ffmpeg_path or "ffmpeg",
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-acodec", options.codec,
            "-b:a", options.bitrate,
        ]
        if options.filters:
            cmd += ["-af", ",".join(options.filters)]
        cmd += ["-f", options.fmt, "pipe:1"]
        return cmd

    async def transcode(self, source: AsyncIterator[bytes], options: TranscodeOptions) -> AsyncIterator[bytes]:
        if not self.available():
            raise CollaboratorError("Audio processing failed", "ffmpeg is not available")

        cmd = self.build_command(options)
        logger.debug("starting ffmpeg cmd=%s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CollaboratorError("Audio processing failed", f"Unable to start ffmpeg: {exc}") from exc

        feed_error: list[BaseException] = []

        async def feed() -> None:
            try:
                async for chunk in source:
                    process.stdin.write(chunk)
                    await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # ffmpeg quit early; its exit status carries the reason
                pass
            except Exception as exc:
                feed_error.append(exc)
            finally:
                with contextlib.suppress(Exception):
                    process.stdin.close()

        feeder = asyncio.create_task(feed())
        stderr_reader = asyncio.create_task(process.stderr.read())
        finished = False
        try:
            while True:
                chunk = await process.stdout.read(STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

            await feeder
            returncode = await process.wait()
            stderr = (await stderr_reader).decode("utf-8", errors="ignore").strip()
            if feed_error:
                exc = feed_error[0]
                if isinstance(exc, CollaboratorError):
                    raise exc
                raise CollaboratorError("Audio processing failed", f"Source stream failed: {exc}") from exc
            if returncode != 0:
                detail = stderr[-STDERR_TAIL:] or f"ffmpeg exited with code {returncode}"
                raise CollaboratorError("Audio processing failed", detail)
            finished = True
        finally:
            if not finished:
                feeder.cancel()
                stderr_reader.cancel()
                if process.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
                # Collect results of the cancelled tasks
                await asyncio.gather(feeder, stderr_reader, return_exceptions=True)
