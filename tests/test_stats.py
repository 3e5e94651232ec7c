import pytest

from backend.encode_engine.schemas import SweepTarget
from backend.encode_engine.stats import directory_size, file_type_stats, format_bytes, storage_report


@pytest.mark.parametrize(
    "num,expected",
    [
        (0, "0 Bytes"),
        (512, "512 Bytes"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (5 * 1024 ** 2, "5 MB"),
        (1024 ** 3 + 1024 ** 2 * 512, "1.5 GB"),
        (3 * 1024 ** 5, "3072 TB"),
    ],
)
def test_format_bytes(num, expected):
    assert format_bytes(num) == expected


def test_directory_size_and_types(tmp_path):
    root = tmp_path / "cache"
    (root / "gifs").mkdir(parents=True)
    (root / "gifs" / "a.gif").write_bytes(b"x" * 100)
    (root / "b.PNG").write_bytes(b"x" * 20)
    (root / "c.zip").write_bytes(b"x" * 5)
    (root / "notes.txt").write_bytes(b"x")

    assert directory_size(root) == 126
    assert directory_size(root / "b.PNG") == 20
    assert directory_size(tmp_path / "missing") == 0
    assert file_type_stats(root) == {
        "image": 1, "gif": 1, "video": 0, "archive": 1, "other": 1, "directories": 1,
    }


def test_storage_report_sums_roots(tmp_path):
    (tmp_path / "temp").mkdir()
    (tmp_path / "temp" / "x.mp4").write_bytes(b"x" * 2048)
    targets = [
        SweepTarget("temp", str(tmp_path / "temp"), 60),
        SweepTarget("uploads", str(tmp_path / "uploads"), 120),
    ]
    report = storage_report(targets, disk_root=str(tmp_path))
    assert report["total_bytes"] == 2048
    assert report["total"] == "2 KB"
    assert report["roots"]["temp"]["files"]["video"] == 1
    assert report["roots"]["uploads"]["size_bytes"] == 0
    assert report["roots"]["uploads"]["max_age_sec"] == 120
    assert report["disk"]["total"] > 0
