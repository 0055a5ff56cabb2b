"""Shared fixtures: a throwaway project tree and Pillow-built images."""

import os
from pathlib import Path

import pytest
from PIL import Image

_PIL_SAVE = {".jpg": "JPEG", ".jpeg": "JPEG", ".png": "PNG", ".webp": "WEBP"}


def _gradient(size):
    base = Image.linear_gradient("L").resize(size)
    return Image.merge("RGB", (base, base.rotate(90), base.transpose(Image.Transpose.FLIP_LEFT_RIGHT)))


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "public" / "gallery").mkdir(parents=True)
    (tmp_path / "src").mkdir()
    return tmp_path


@pytest.fixture
def make_image():
    """make_image(path, size=(800, 600), noise=False) writes a real image and returns its path."""
    def _make(path: Path, size=(800, 600), noise: bool = False, **save_kw) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if noise:
            im = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
        else:
            im = _gradient(size)
        im.save(path, format=_PIL_SAVE[path.suffix.lower()], **save_kw)
        return path
    return _make


@pytest.fixture
def touch():
    """touch(path, data=b"x") writes raw bytes, for code that never decodes the file."""
    def _touch(path: Path, data: bytes = b"x") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path
    return _touch
