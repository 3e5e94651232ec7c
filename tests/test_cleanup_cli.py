import os
import time

import pytest

from backend import run_cleanup
from backend.encode_engine.workspace import unique_name


@pytest.fixture()
def roots(tmp_path, monkeypatch):
    for name in ("TEMP_ROOT", "CACHE_ROOT", "UPLOADS_ROOT"):
        monkeypatch.setenv(name, str(tmp_path / name.split("_")[0].lower()))
    monkeypatch.delenv("SWEEP_CONFIG", raising=False)
    monkeypatch.setenv("SWEEP_MAX_AGE", "1h")
    (tmp_path / "temp").mkdir()
    (tmp_path / "cache" / "gifs").mkdir(parents=True)
    return tmp_path


def _entry(root, age):
    path = root / unique_name("job", ".gif", now=time.time() - age)
    path.write_bytes(b"x")
    return path


def test_default_run_sweeps_by_age(roots, capsys):
    old = _entry(roots / "temp", 7200)
    new = _entry(roots / "temp", 10)
    assert run_cleanup.main([]) == 0
    assert not old.exists()
    assert new.exists()
    assert "deleted" in capsys.readouterr().out


def test_max_age_override(roots):
    entry = _entry(roots / "cache" / "gifs", 120)
    assert run_cleanup.main(["--max-age", "1m"]) == 0
    assert not entry.exists()


def test_only_temp_ignores_age_and_cache(roots):
    temp = _entry(roots / "temp", 0)
    cached = _entry(roots / "cache" / "gifs", 0)
    assert run_cleanup.main(["--only-temp"]) == 0
    assert not temp.exists()
    assert cached.exists()


def test_only_cache(roots):
    temp = _entry(roots / "temp", 0)
    cached = _entry(roots / "cache" / "gifs", 0)
    assert run_cleanup.main(["--only-cache"]) == 0
    assert temp.exists()
    assert not cached.exists()


def test_flags_are_mutually_exclusive(roots):
    with pytest.raises(SystemExit):
        run_cleanup.main(["--only-temp", "--only-cache"])


def test_stats_deletes_nothing(roots, capsys):
    old = _entry(roots / "temp", 10 ** 6)
    assert run_cleanup.main(["--stats"]) == 0
    assert old.exists()
    assert "total" in capsys.readouterr().out


def test_bad_duration_and_config(roots, tmp_path):
    assert run_cleanup.main(["--max-age", "whenever"]) == 2
    assert run_cleanup.main(["--config", str(tmp_path / "missing.yaml")]) == 2


def test_failures_set_exit_code(roots, mocker):
    _entry(roots / "temp", 7200)
    mocker.patch("backend.encode_engine.sweeper.remove_tree", return_value=False)
    assert run_cleanup.main([]) == 1
    assert os.listdir(roots / "temp")
