"""
Image decoding and encoding.

Pillow is the default encoder. When an ImageMagick binary is configured,
variants are rendered by "convert"/"magick" instead and Pillow is only used
to read dimensions and build the placeholder preview.
"""

import base64
import io
import os
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError, features

from .errors import ConfigError, SourceReadError, TranscodeError
from .fsutil import ensure_dir, tmp_path_for

PIL_FORMATS = {"jpg": "JPEG", "png": "PNG", "webp": "WEBP", "avif": "AVIF", "gif": "GIF"}


def find_imagemagick_bin(explicit: Optional[str] = None) -> Tuple[str, bool]:
    candidates = []
    if explicit:
        candidates.append(explicit)
    candidates += ["convert", "magick"]
    for exe in candidates:
        try:
            out = subprocess.run([exe, "-version"], capture_output=True, text=True)
            if out.returncode == 0 and ("ImageMagick" in out.stdout or "ImageMagick" in out.stderr):
                requires_wrapper = (exe == "magick" or exe.endswith("/magick"))
                return exe, requires_wrapper
        except FileNotFoundError:
            continue
    raise ConfigError("Could not find ImageMagick. Install it or pass --imagemagick-bin")


def supports_format(fmt: str) -> bool:
    if fmt == "avif":
        return bool(features.check("avif"))
    if fmt == "webp":
        return bool(features.check("webp"))
    return fmt in PIL_FORMATS


def open_source(path: Path) -> Image.Image:
    """Open and fully decode a source, applying EXIF orientation."""
    try:
        with Image.open(path) as im:
            im.load()
            return ImageOps.exif_transpose(im)
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as e:
        raise SourceReadError(path, str(e) or e.__class__.__name__)


def read_size(path: Path) -> Tuple[int, int]:
    """Intrinsic (width, height) after EXIF orientation."""
    try:
        with Image.open(path) as im:
            w, h = im.size
            orientation = im.getexif().get(0x0112, 1)
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as e:
        raise SourceReadError(path, str(e) or e.__class__.__name__)
    if orientation in (5, 6, 7, 8):
        return h, w
    return w, h


def target_size(size: Tuple[int, int], width: int) -> Tuple[int, int]:
    w, h = size
    if width >= w:
        return w, h
    return width, max(1, round(h * width / w))


def _prepare_mode(im: Image.Image, fmt: str) -> Image.Image:
    has_alpha = ("A" in im.mode) or (im.info.get("transparency") is not None)
    if fmt == "jpg":
        if has_alpha:
            rgba = im.convert("RGBA")
            bg = Image.new("RGB", rgba.size, (255, 255, 255))
            bg.paste(rgba, mask=rgba.getchannel("A"))
            return bg
        return im if im.mode == "RGB" else im.convert("RGB")
    if im.mode not in ("RGB", "RGBA"):
        return im.convert("RGBA" if has_alpha else "RGB")
    return im


def save_options(fmt: str, quality: int) -> dict:
    if fmt == "jpg":
        return {"quality": quality, "optimize": True, "progressive": True}
    if fmt == "webp":
        return {"quality": quality, "method": 6}
    if fmt == "avif":
        return {"quality": quality}
    if fmt == "png":
        return {"optimize": True}
    return {}


def encode_with_pillow(im: Image.Image, dst: Path, width: int, fmt: str, quality: int) -> int:
    """
    Resize im to width (never upscaling), encode to fmt and move the result
    into dst atomically. Returns the byte size written.
    """
    if not supports_format(fmt):
        raise TranscodeError(dst, f"this Pillow build cannot encode {fmt}")
    tmp = tmp_path_for(dst)
    ensure_dir(dst)
    try:
        size = target_size(im.size, width)
        out = im.resize(size, Image.LANCZOS) if size != im.size else im
        out = _prepare_mode(out, fmt)
        out.save(tmp, format=PIL_FORMATS[fmt], **save_options(fmt, quality))
        os.replace(tmp, dst)
    except (OSError, ValueError, KeyError) as e:
        if tmp.exists():
            tmp.unlink()
        raise TranscodeError(dst, str(e) or e.__class__.__name__)
    return dst.stat().st_size


def build_convert_cmd(
    im_bin: str,
    requires_wrapper: bool,
    src: Path,
    dst: Path,
    target_width: int,
    fmt: str,
    quality: int,
) -> list:
    cmd = []
    if requires_wrapper:
        cmd += [im_bin, "convert"]
    else:
        cmd += [im_bin]
    # ">" shrinks only
    cmd += [str(src), "-auto-orient", "-resize", f"{target_width}x>", "-strip"]
    cmd += ["-quality", str(quality)]
    if fmt == "webp":
        cmd += ["-define", "webp:method=6"]
    elif fmt == "jpg":
        cmd += ["-interlace", "Plane", "-background", "white", "-flatten"]
    # explicit coder prefix, the output format never depends on the temp name
    cmd += [f"{fmt}:{dst}"]
    return cmd


def encode_with_magick(im_bin: str, requires_wrapper: bool, src: Path, dst: Path,
                       width: int, fmt: str, quality: int) -> int:
    tmp = tmp_path_for(dst)
    ensure_dir(dst)
    cmd = build_convert_cmd(im_bin, requires_wrapper, src, tmp, width, fmt, quality)
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0 or not tmp.exists():
        if tmp.exists():
            tmp.unlink()
        raise TranscodeError(dst, proc.stderr.strip() or proc.stdout.strip() or f"exit {proc.returncode}")
    os.replace(tmp, dst)
    return dst.stat().st_size


# ---------- Placeholders ----------

def placeholder_data_uri(im: Image.Image, width: int = 20, blur: float = 2.0, quality: int = 50) -> str:
    """Tiny blurred WebP preview as an embeddable data URI."""
    small = im.copy()
    small.thumbnail((width, width * 10), Image.LANCZOS)
    small = _prepare_mode(small, "webp").filter(ImageFilter.GaussianBlur(blur))
    buf = io.BytesIO()
    small.save(buf, format="WEBP", quality=quality)
    return f"data:image/webp;base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"


def aspect_ratio(size: Tuple[int, int]) -> float:
    w, h = size
    if not w or not h:
        return 1.0
    return w / h


def minimal_raster(fmt: str) -> bytes:
    """1x1 image bytes in fmt, used to stand in for a missing file."""
    fmt = "jpg" if fmt == "jpeg" else fmt
    mode = "RGB" if fmt == "jpg" else "RGBA"
    im = Image.new(mode, (1, 1), (0, 0, 0) if mode == "RGB" else (0, 0, 0, 0))
    buf = io.BytesIO()
    im.save(buf, format=PIL_FORMATS[fmt])
    return buf.getvalue()
