import os
import zipfile
from dataclasses import replace

import pytest
from PIL import Image

from backend.encode_engine.schemas import JobInput


def _ffmpeg_bin():
    try:
        import imageio_ffmpeg  # type: ignore
        return imageio_ffmpeg.get_ffmpeg_exe()
    except Exception:
        pytest.skip("no ffmpeg binary available")


@pytest.fixture()
def real_runner(settings, registry):
    from backend.encode_engine.worker import JobRunner

    runner = JobRunner(replace(settings, ffmpeg_bin=_ffmpeg_bin(), step_timeout_sec=60), registry=registry)
    yield runner
    runner.shutdown()


def _still(path, size=(48, 32)):
    img = Image.new("RGB", size, (254, 254, 254))
    for x in range(10, 30):
        for y in range(8, 24):
            img.putpixel((x, y), (200, 30, 30))
    img.save(path)
    return JobInput.from_path(str(path))


def test_keyed_gif_smoke(real_runner, settings, tmp_path):
    result = real_runner.run("image.keyed_gif", {}, [_still(tmp_path / "logo.png")])
    with Image.open(result.output_path) as gif:
        assert gif.format == "GIF"
        assert gif.size == (48, 32)
    assert os.listdir(settings.temp_root) == []


def test_create_then_explode_smoke(real_runner, settings, tmp_path):
    frames = [_still(tmp_path / f"f{i}.png") for i in range(3)]
    created = real_runner.run("gif.create", {"fps": "5"}, frames)
    assert os.path.getsize(created.output_path) > 0

    exploded = real_runner.run("gif.explode", {}, [JobInput.from_path(created.output_path)])
    with zipfile.ZipFile(exploded.output_path) as archive:
        assert len(archive.namelist()) >= 1
    assert os.listdir(settings.temp_root) == []
