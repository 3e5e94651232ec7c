import pytest

from backend.encode_engine.errors import StepError
from backend.encode_engine.media import probe, resolve_ffmpeg, resolve_ffprobe, summarize


def test_resolve_ffmpeg_prefers_configuration(monkeypatch):
    monkeypatch.setenv("FFMPEG_BIN", "/opt/ffmpeg/bin/ffmpeg")
    assert resolve_ffmpeg("/usr/local/bin/ffmpeg") == "/usr/local/bin/ffmpeg"
    assert resolve_ffmpeg() == "/opt/ffmpeg/bin/ffmpeg"


def test_resolve_ffmpeg_falls_back_to_path(monkeypatch, mocker):
    monkeypatch.delenv("FFMPEG_BIN", raising=False)
    mocker.patch("imageio_ffmpeg.get_ffmpeg_exe", side_effect=RuntimeError("no binary"))
    assert resolve_ffmpeg() == "ffmpeg"
    monkeypatch.delenv("FFPROBE_BIN", raising=False)
    assert resolve_ffprobe() == "ffprobe"


def test_probe_missing_binary(tmp_path):
    missing = str(tmp_path / "no-ffprobe")
    assert probe("clip.mp4", ffprobe_bin=missing) == {}
    with pytest.raises(StepError):
        probe("clip.mp4", ffprobe_bin=missing, strict=True)


def test_summarize_flattens_probe_output():
    info = summarize({
        "format": {"format_name": "mov,mp4", "duration": "4.5", "size": "2048", "bit_rate": "oops"},
        "streams": [
            {"codec_type": "video", "codec_name": "h264", "width": 640, "height": 360,
             "avg_frame_rate": "30000/1001", "nb_frames": "135", "pix_fmt": "yuv420p"},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
    })
    assert info["duration"] == 4.5
    assert info["bit_rate"] is None
    assert info["fps"] == 29.97
    assert info["frames"] == 135
    assert info["has_audio"] is True
    assert summarize({})["fps"] is None
