import subprocess
from pathlib import Path

import pytest

from gallerybuild import imaging
from gallerybuild.errors import ConfigError, TranscodeError
from gallerybuild.imaging import build_convert_cmd, encode_with_magick, find_imagemagick_bin


def leftovers(directory):
    return sorted(p.name for p in directory.iterdir() if p.name.startswith("."))


# ---------- convert command ----------

def test_convert_cmd_jpg():
    tmp = Path("/g/.photo-320w.1a2b3c4d.tmp.jpg")
    cmd = build_convert_cmd("convert", False, Path("/g/photo.png"), tmp, 320, "jpg", 82)

    assert cmd[:2] == ["convert", "/g/photo.png"]
    assert cmd[cmd.index("-resize") + 1] == "320x>"
    assert cmd.index("-auto-orient") < cmd.index("-resize")
    assert "-strip" in cmd
    assert cmd[cmd.index("-quality") + 1] == "82"
    assert "-flatten" in cmd
    assert cmd[cmd.index("-background") + 1] == "white"
    assert cmd[-1] == f"jpg:{tmp}"


def test_convert_cmd_webp_with_magick_wrapper():
    tmp = Path("/g/.photo-640w.1a2b3c4d.tmp.webp")
    cmd = build_convert_cmd("magick", True, Path("/g/photo.jpg"), tmp, 640, "webp", 80)

    assert cmd[:3] == ["magick", "convert", "/g/photo.jpg"]
    assert cmd[cmd.index("-resize") + 1] == "640x>"
    assert cmd[cmd.index("-define") + 1] == "webp:method=6"
    assert "-flatten" not in cmd
    assert cmd[-1] == f"webp:{tmp}"


# ---------- encode_with_magick ----------

def test_magick_success_replaces_atomically(tmp_path, monkeypatch):
    dst = tmp_path / "out" / "photo-320w.webp"
    calls = []
    replaced = []
    real_replace = imaging.os.replace

    def fake_run(cmd, **kw):
        calls.append(cmd)
        Path(cmd[-1].split(":", 1)[1]).write_bytes(b"RIFF....WEBP")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def recording_replace(src, target):
        replaced.append((Path(src).name, Path(target)))
        real_replace(src, target)

    monkeypatch.setattr(imaging.subprocess, "run", fake_run)
    monkeypatch.setattr(imaging.os, "replace", recording_replace)

    size = encode_with_magick("convert", False, tmp_path / "photo.jpg", dst, 320, "webp", 80)

    assert size == len(b"RIFF....WEBP")
    assert dst.read_bytes() == b"RIFF....WEBP"
    assert len(calls) == 1
    assert calls[0][-1].startswith("webp:")
    assert len(replaced) == 1
    tmp_name, target = replaced[0]
    assert target == dst
    assert tmp_name.startswith(".photo-320w.") and tmp_name.endswith(".tmp.webp")
    assert leftovers(dst.parent) == []


def test_magick_failure_removes_temp(tmp_path, monkeypatch):
    dst = tmp_path / "photo-320w.jpg"

    def fake_run(cmd, **kw):
        Path(cmd[-1].split(":", 1)[1]).write_bytes(b"partial")
        return subprocess.CompletedProcess(cmd, 1, "", "boom\n")

    monkeypatch.setattr(imaging.subprocess, "run", fake_run)

    with pytest.raises(TranscodeError, match="boom") as exc:
        encode_with_magick("convert", False, tmp_path / "photo.jpg", dst, 320, "jpg", 82)

    assert exc.value.path == dst
    assert not dst.exists()
    assert leftovers(tmp_path) == []


def test_magick_without_output_is_an_error(tmp_path, monkeypatch):
    dst = tmp_path / "photo-320w.jpg"
    monkeypatch.setattr(imaging.subprocess, "run",
                        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, "", ""))

    with pytest.raises(TranscodeError, match="exit 0"):
        encode_with_magick("convert", False, tmp_path / "photo.jpg", dst, 320, "jpg", 82)

    assert not dst.exists()


# ---------- binary discovery ----------

def test_find_imagemagick_prefers_explicit_magick(monkeypatch):
    tried = []

    def fake_run(cmd, **kw):
        tried.append(cmd[0])
        return subprocess.CompletedProcess(cmd, 0, "Version: ImageMagick 7.1.1", "")

    monkeypatch.setattr(imaging.subprocess, "run", fake_run)

    assert find_imagemagick_bin("/opt/im/bin/magick") == ("/opt/im/bin/magick", True)
    assert tried == ["/opt/im/bin/magick"]


def test_find_imagemagick_skips_missing_and_foreign_binaries(monkeypatch):
    def fake_run(cmd, **kw):
        if cmd[0] == "im6":
            raise FileNotFoundError(cmd[0])
        if cmd[0] == "convert":
            # the Windows filesystem tool shares the name
            return subprocess.CompletedProcess(cmd, 0, "Converts FAT volumes to NTFS.", "")
        return subprocess.CompletedProcess(cmd, 0, "Version: ImageMagick 7.1.1", "")

    monkeypatch.setattr(imaging.subprocess, "run", fake_run)

    assert find_imagemagick_bin("im6") == ("magick", True)


def test_find_imagemagick_not_installed(monkeypatch):
    def fake_run(cmd, **kw):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(imaging.subprocess, "run", fake_run)

    with pytest.raises(ConfigError, match="imagemagick-bin"):
        find_imagemagick_bin()
