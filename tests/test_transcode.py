"""Tests for the ffmpeg transcoder wrapper."""

import shutil

import pytest

from tubegate.errors import CollaboratorError
from tubegate.transcode import STUDIO_FILTERS, FFmpegTranscoder, TranscodeOptions

needs_sh = pytest.mark.skipif(shutil.which("sh") is None or shutil.which("cat") is None, reason="needs sh and cat")


async def source(chunks):
    for chunk in chunks:
        yield chunk


async def failing_source():
    yield b"partial"
    raise RuntimeError("connection reset by CDN")


class ScriptTranscoder(FFmpegTranscoder):
    """Runs a shell snippet in place of ffmpeg so the pipe plumbing is exercised."""

    def __init__(self, script: str):
        super().__init__(ffmpeg_path="sh")
        self.script = script

    def build_command(self, options):
        return ["sh", "-c", self.script]


async def collect(stream):
    return b"".join([chunk async for chunk in stream])


class TestBuildCommand:
    def test_default_mp3(self):
        cmd = FFmpegTranscoder("/usr/bin/ffmpeg").build_command(TranscodeOptions(bitrate="128k"))
        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert cmd[cmd.index("-acodec") + 1] == "libmp3lame"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-f") + 1] == "mp3"
        assert cmd[-1] == "pipe:1"
        assert "-af" not in cmd

    def test_studio_filter_chain(self):
        cmd = FFmpegTranscoder("ffmpeg").build_command(TranscodeOptions(bitrate="320k", filters=STUDIO_FILTERS))
        assert cmd[cmd.index("-b:a") + 1] == "320k"
        assert cmd[cmd.index("-af") + 1] == (
            "volume=1.5,aresample=48000,highpass=f=80,lowpass=f=16000,aresample=async=1000"
        )


class TestAvailability:
    def test_missing_binary(self, monkeypatch):
        monkeypatch.setattr(shutil, "which", lambda name: None)
        assert not FFmpegTranscoder().available()

    @pytest.mark.asyncio
    async def test_missing_binary_raises_on_first_read(self, monkeypatch):
        monkeypatch.setattr(shutil, "which", lambda name: None)
        stream = FFmpegTranscoder().transcode(source([b"x"]), TranscodeOptions())
        with pytest.raises(CollaboratorError, match="ffmpeg is not available"):
            await stream.__anext__()


@needs_sh
class TestPipe:
    @pytest.mark.asyncio
    async def test_bytes_pass_through_process(self):
        chunks = [b"a" * 70_000, b"b" * 10, b"c" * 100_000]
        out = await collect(ScriptTranscoder("cat").transcode(source(chunks), TranscodeOptions()))
        assert out == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_stderr(self):
        transcoder = ScriptTranscoder("cat >/dev/null; echo 'Invalid data found' >&2; exit 3")
        with pytest.raises(CollaboratorError) as excinfo:
            await collect(transcoder.transcode(source([b"junk"]), TranscodeOptions()))
        assert excinfo.value.error == "Audio processing failed"
        assert "Invalid data found" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_source_failure_is_reported(self):
        with pytest.raises(CollaboratorError, match="connection reset by CDN"):
            await collect(ScriptTranscoder("cat").transcode(failing_source(), TranscodeOptions()))

    @pytest.mark.asyncio
    async def test_early_close_kills_process(self):
        stream = ScriptTranscoder("cat; sleep 30").transcode(source([b"x" * 1000]), TranscodeOptions())
        assert await stream.__anext__()
        await stream.aclose()
