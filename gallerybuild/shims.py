"""
Legacy URL shims under the public root.

create_shims   links legacy URLs to their canonical files (relative symlinks)
repair_shims   replaces links whose target has gone with a tiny placeholder,
               so a static copy step never fails on a missing stat()
"""

import os
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from .errors import ConfigError
from .fsutil import write_bytes_atomic
from .imaging import PIL_FORMATS, minimal_raster, supports_format
from .naming import format_of, url_to_path

SVG_1X1 = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="1" height="1" viewBox="0 0 1 1">'
    '<rect width="1" height="1" fill="#000"/></svg>'
)


def placeholder_bytes(path: Path) -> bytes:
    fmt = format_of(path)
    if fmt == "svg":
        return SVG_1X1.encode("utf-8")
    if fmt in PIL_FORMATS and supports_format(fmt):
        return minimal_raster(fmt)
    return b""


def write_placeholder(path: Path) -> None:
    write_bytes_atomic(path, placeholder_bytes(path))


def is_broken_link(p: Path) -> bool:
    return p.is_symlink() and not p.exists()


def repair_shims(root: Path, ensure: Sequence[Path] = ()) -> Tuple[List[str], List[str]]:
    """
    Replace every broken symlink under root with a placeholder file.
    Directory links are never followed. Returns (status lines, errors).
    """
    statuses: List[str] = []
    errors: List[str] = []
    if root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                p = Path(dirpath) / name
                if not is_broken_link(p):
                    continue
                target = os.readlink(p)
                try:
                    p.unlink()
                    write_placeholder(p)
                except OSError as e:
                    errors.append(f"{p}: {e}")
                    statuses.append(f"ERR   {p.relative_to(root)}: {e}")
                    continue
                statuses.append(f"DONE  {p.relative_to(root)}  broken link to {target} replaced")

    for p in ensure:
        if os.path.lexists(p) and not is_broken_link(p):
            continue
        try:
            if is_broken_link(p):
                p.unlink()
            write_placeholder(p)
        except OSError as e:
            errors.append(f"{p}: {e}")
            statuses.append(f"ERR   {p}: {e}")
            continue
        statuses.append(f"DONE  {p}  placeholder created")
    return statuses, errors


def load_shim_map(data: object) -> Dict[str, str]:
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ConfigError("shim map must be a JSON object of legacy URL -> canonical URL")
    return dict(data)


def _inside(path: Path, root: Path) -> bool:
    return root in Path(os.path.normpath(path)).parents


def create_shims(public_root: Path, mapping: Dict[str, str], dry_run: bool = False) -> Tuple[List[str], List[str]]:
    """
    Link each legacy URL to its canonical file with a relative symlink.
    Missing targets are skipped; an existing regular file is never replaced.
    """
    statuses: List[str] = []
    errors: List[str] = []
    public_root = public_root.resolve()
    for legacy, canonical in sorted(mapping.items()):
        src = url_to_path(legacy, public_root)
        target = url_to_path(canonical, public_root)
        if not _inside(src, public_root) or not _inside(target, public_root):
            errors.append(f"{legacy}: outside public root")
            statuses.append(f"ERR   {legacy} -> {canonical}: outside public root")
            continue
        if not target.exists():
            statuses.append(f"SKIP  {legacy}: target {canonical} does not exist")
            continue
        if os.path.lexists(src) and not src.is_symlink():
            statuses.append(f"SKIP  {legacy}: a real file already exists")
            continue
        rel = os.path.relpath(target, src.parent)
        if dry_run:
            statuses.append(f"DRY   {legacy} -> {rel}")
            continue
        try:
            src.parent.mkdir(parents=True, exist_ok=True)
            if src.is_symlink():
                src.unlink()
            os.symlink(rel, src)
        except OSError as e:
            errors.append(f"{legacy}: {e}")
            statuses.append(f"ERR   {legacy} -> {canonical}: {e}")
            continue
        statuses.append(f"DONE  {legacy} -> {rel}")
    return statuses, errors
