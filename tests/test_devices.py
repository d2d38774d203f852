# tests/test_devices.py
import json

from evcam_remote.devices import (
    DirectoryMediaLocator,
    JsonCursorStore,
    NullVideoProbe,
)


def _touch(path, content=b"data"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


# --- 游标存储 ---


def test_cursor_store_round_trip(tmp_path):
    store = JsonCursorStore(tmp_path / "state" / "cursor.json")
    assert store.load() == 0

    store.save(12345)
    assert store.load() == 12345
    assert json.loads(store.path.read_text(encoding="utf-8")) == {"last_update_id": 12345}
    # 原子替换后不残留临时文件
    assert [p.name for p in store.path.parent.iterdir()] == ["cursor.json"]


def test_cursor_store_corrupted_file(tmp_path):
    path = tmp_path / "cursor.json"
    path.write_text("{oops", encoding="utf-8")
    assert JsonCursorStore(path).load() == 0

    path.write_text("[1, 2]", encoding="utf-8")
    assert JsonCursorStore(path).load() == 0


# --- 媒体查找 ---


def test_find_videos_by_timestamp_prefix(tmp_path):
    primary = tmp_path / "primary"
    backup = tmp_path / "backup"
    _touch(primary / "20240101_120000_front.mp4")
    _touch(primary / "20240101_120000_rear.mp4")
    _touch(primary / "20240101_120500_front.mp4")
    _touch(primary / "20240101_120000_front.jpg")
    _touch(primary / "20231231_235959_front.mp4")
    # 同名文件只取优先目录中的那个；空文件忽略
    _touch(backup / "20240101_120000_front.mp4", b"other")
    _touch(backup / "20240101_120000_left.mp4", b"")

    locator = DirectoryMediaLocator(video_dirs=[primary, backup])
    files = locator.find_videos(["20240101_120000", "20240101_120500"])

    assert [f.name for f in files] == [
        "20240101_120000_front.mp4",
        "20240101_120000_rear.mp4",
        "20240101_120500_front.mp4",
    ]
    assert files[0].parent == primary


def test_find_photos(tmp_path):
    photos = tmp_path / "photos"
    _touch(photos / "20240101_120000_front.jpg")
    _touch(photos / "20240101_120000_rear.PNG")
    _touch(photos / "20240101_120000_front.mp4")

    locator = DirectoryMediaLocator(photo_dirs=[photos, tmp_path / "missing"])
    names = [f.name for f in locator.find_photos("20240101_120000")]

    assert names == ["20240101_120000_front.jpg", "20240101_120000_rear.PNG"]


def test_empty_timestamps_find_nothing(tmp_path):
    _touch(tmp_path / "x.mp4")
    locator = DirectoryMediaLocator(video_dirs=[tmp_path], photo_dirs=[tmp_path])
    assert locator.find_videos([]) == []
    assert locator.find_videos([""]) == []
    assert locator.find_photos("") == []


# --- 默认实现 ---


def test_null_probe(tmp_path):
    probe = NullVideoProbe()
    assert probe.extract_thumbnail(tmp_path / "v.mp4", tmp_path / "t.jpg") is False
    assert probe.duration_seconds(tmp_path / "v.mp4") == 0
