"""
Filesystem naming contract shared by every stage.

    source        <group>.<ext>             ext in jpg, jpeg, png, webp
    variant       <group>-<width>w.<format> format in webp, avif, jpg
    base default  <group>.<preferred>
    sidecar       <group>.meta.json

Group keys are public URLs ("/gallery/sunset") with the extension and any
trailing "-<digits>w" suffixes removed.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

SOURCE_EXTS = {".jpg", ".jpeg", ".png", ".webp"}
RASTER_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".avif"}
MODERN_FORMATS = ("webp", "avif")
LEGACY_FORMATS = ("jpg", "png")
META_SUFFIX = ".meta.json"

EXT_RE = re.compile(r"\.[A-Za-z0-9]+$")
WIDTH_SUFFIX_RE = re.compile(r"(-\d+w)+$")
VARIANT_NAME_RE = re.compile(r"^(?P<stem>.+)-(?P<width>\d+)w\.(?P<ext>[A-Za-z0-9]+)$")

# Transient and editor artefacts to ignore
TRANSIENT_SUFFIXES = {".swp", ".tmp", ".bak"}
ORIGINALS_DIRNAME = "Originals"


def is_transient(p: Path) -> bool:
    n = p.name
    return (
        n.startswith(".#")         # Emacs lockfiles
        or n.endswith("~")         # backup files
        or n == ".DS_Store"
        or (n.startswith(".") and ".tmp." in n)  # in-flight encoder output
        or p.suffix.lower() in TRANSIENT_SUFFIXES
    )


def format_of(path) -> str:
    """Lowercase format name for a path; jpeg is folded into jpg."""
    ext = os.path.splitext(str(path))[1].lower().lstrip(".")
    return "jpg" if ext == "jpeg" else ext


def is_modern(fmt: str) -> bool:
    return fmt in MODERN_FORMATS


def is_variant_name(name: str) -> bool:
    return VARIANT_NAME_RE.match(name) is not None


def parse_variant(name: str) -> Optional[Tuple[str, int, str]]:
    """Split "photo-640w.webp" into ("photo", 640, "webp"), or None."""
    m = VARIANT_NAME_RE.match(name)
    if not m:
        return None
    return m.group("stem"), int(m.group("width")), format_of(name)


def strip_extension(url: str) -> str:
    return EXT_RE.sub("", url)


def group_key(url: str) -> str:
    """Canonical group for a file URL: extension and width suffixes stripped."""
    return WIDTH_SUFFIX_RE.sub("", strip_extension(url))


def variant_name(stem: str, width: int, fmt: str) -> str:
    return f"{stem}-{width}w.{fmt}"


def meta_name(stem: str) -> str:
    return f"{stem}{META_SUFFIX}"


def public_url(path: Path, public_root: Path) -> str:
    rel = Path(os.path.relpath(path, public_root)).as_posix()
    return "/" + rel


def url_to_path(url: str, public_root: Path) -> Path:
    return public_root / url.lstrip("/")


# ---------- Group index ----------

class VariantDescriptor(NamedTuple):
    path: Path
    url: str
    group: str
    width: Optional[int]
    fmt: str


def describe(path: Path, public_root: Path) -> VariantDescriptor:
    url = public_url(path, public_root)
    parsed = parse_variant(path.name)
    width = parsed[1] if parsed else None
    return VariantDescriptor(path, url, group_key(url), width, format_of(path))


def iter_files(root: Path):
    """Yield regular files (and links to them) under root, sorted, skipping hidden dirs."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for fn in sorted(filenames):
            yield Path(dirpath) / fn


def build_group_index(public_root: Path) -> Dict[str, List[VariantDescriptor]]:
    """
    Walk public_root once and return {group_key: [VariantDescriptor, ...]}.
    Only rasters that resolve to an existing file are indexed, so dangling
    links never reach the manifest.
    """
    index: Dict[str, List[VariantDescriptor]] = {}
    if not public_root.is_dir():
        return index
    for p in iter_files(public_root):
        if p.suffix.lower() not in RASTER_EXTS or is_transient(p):
            continue
        if not p.is_file():
            continue
        d = describe(p, public_root)
        index.setdefault(d.group, []).append(d)
    return index
