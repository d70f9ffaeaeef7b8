from pathlib import Path

import pytest

from vibestream.services import audio_processor
from vibestream.services.audio_processor import TranscodeFailed, Transcoder
from vibestream.services.models import TrackMetadata


class FakeProc:
    def __init__(self, returncode=0, stderr=b""):
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr

    def kill(self):
        pass

    async def wait(self):
        return self.returncode


@pytest.fixture
def ffmpeg_on_path(monkeypatch):
    monkeypatch.setattr(audio_processor.shutil, "which", lambda binary: f"/usr/bin/{binary}")


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "input.webm"
    path.write_bytes(b"\x1a\x45\xdf\xa3 raw audio")
    return path


class TestTranscoder:
    @pytest.mark.asyncio
    async def test_canonical_encoding_args(self, settings, source, tmp_path, monkeypatch, ffmpeg_on_path):
        seen = {}

        async def fake_exec(*cmd, **kwargs):
            seen["cmd"] = list(cmd)
            Path(cmd[-1]).write_bytes(b"ID3 encoded")
            return FakeProc()

        monkeypatch.setattr(audio_processor.asyncio, "create_subprocess_exec", fake_exec)
        output = tmp_path / "out.mp3"
        meta = TrackMetadata(identifier="dQw4w9WgXcQ", title="A=B", artist="C;D", album="E")

        result = await Transcoder(settings).transcode(source, output, meta)

        cmd = seen["cmd"]
        assert result == output
        assert cmd[cmd.index("-b:a") + 1] == "192k"
        assert cmd[cmd.index("-ac") + 1] == "2"
        assert cmd[cmd.index("-ar") + 1] == "44100"
        assert cmd[cmd.index("-af") + 1] == "loudnorm"
        assert "title=A\\=B" in cmd
        assert "artist=C\\;D" in cmd
        assert "album=E" in cmd

    @pytest.mark.asyncio
    async def test_failure_removes_partial_output(self, settings, source, tmp_path, monkeypatch, ffmpeg_on_path):
        async def fake_exec(*cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"half an mp3")
            return FakeProc(returncode=1, stderr=b"Invalid data found when processing input")

        monkeypatch.setattr(audio_processor.asyncio, "create_subprocess_exec", fake_exec)
        output = tmp_path / "out.mp3"

        with pytest.raises(TranscodeFailed, match="Invalid data"):
            await Transcoder(settings).transcode(source, output)
        assert not output.exists()

    @pytest.mark.asyncio
    async def test_empty_output_is_failure(self, settings, source, tmp_path, monkeypatch, ffmpeg_on_path):
        async def fake_exec(*cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"")
            return FakeProc()

        monkeypatch.setattr(audio_processor.asyncio, "create_subprocess_exec", fake_exec)
        output = tmp_path / "out.mp3"

        with pytest.raises(TranscodeFailed):
            await Transcoder(settings).transcode(source, output)
        assert not output.exists()

    @pytest.mark.asyncio
    async def test_missing_ffmpeg(self, settings, source, tmp_path, monkeypatch):
        monkeypatch.setattr(audio_processor.shutil, "which", lambda binary: None)
        with pytest.raises(TranscodeFailed, match="not found"):
            await Transcoder(settings).transcode(source, tmp_path / "out.mp3")
