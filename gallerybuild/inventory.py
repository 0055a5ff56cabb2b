"""
Image inventory and consolidation plan.

Groups every image under the asset roots by a loose, normalised name and
proposes one master per group; everything else in the group is listed as a
deletion candidate for plan_prune. Nothing on disk is touched.
"""

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from .naming import RASTER_EXTS, format_of, is_transient, iter_files

NORMALIZE_STEPS = [
    (re.compile(r"[\s_]+"), "-"),
    (re.compile(r"@\d+x\b"), ""),                        # @2x, @3x
    (re.compile(r"[\-_]\d{2,5}w\b"), ""),                # -1024w
    (re.compile(r"[\-_]\d{2,5}x\d{2,5}\b"), ""),         # -800x600
    (re.compile(r"[\-_](small|sm|medium|md|large|lg|xl|xxl|thumbnail|thumb|min|minified|compressed|retina)\b"), ""),
    (re.compile(r"[\-_](copy|final|new|v\d+)\b"), ""),
    (re.compile(r"\(\d+\)$"), ""),                       # (1), (2)
    (re.compile(r"--+"), "-"),
    (re.compile(r"^-+|-+$"), ""),
]

FORMAT_RANK = {"webp": 3, "avif": 3, "jpg": 2, "png": 1}


def normalize_group_key(filename: str) -> str:
    base = re.sub(r"\.[^.]+$", "", filename).lower()
    for pattern, repl in NORMALIZE_STEPS:
        base = pattern.sub(repl, base)
    return base


def describe_file(path: Path, root: Path) -> dict:
    width = height = None
    try:
        with Image.open(path) as im:
            width, height = im.size
    except (OSError, UnidentifiedImageError, ValueError):
        pass
    return {
        "path": Path(os.path.relpath(path, root)).as_posix(),
        "sizeBytes": path.stat().st_size,
        "width": width,
        "height": height,
        "format": format_of(path),
        "baseName": path.name,
        "groupKey": normalize_group_key(path.name),
    }


def choose_master(items: List[dict]) -> dict:
    """
    Prefer the best WebP when it is within 90% of the top resolution,
    otherwise the highest resolution, then format rank, then smaller file.
    """
    with_dims = [i for i in items if i["width"] and i["height"]]
    if not with_dims:
        return sorted(items, key=lambda i: (-FORMAT_RANK.get(i["format"], 0), -(i["sizeBytes"] or 0)))[0]

    def area(i: dict) -> int:
        return i["width"] * i["height"]

    max_res = max(area(i) for i in with_dims)
    webps = sorted((i for i in with_dims if i["format"] == "webp"), key=area, reverse=True)
    if webps and area(webps[0]) >= 0.9 * max_res:
        return webps[0]
    return sorted(
        with_dims,
        key=lambda i: (-area(i), -FORMAT_RANK.get(i["format"], 0), i["sizeBytes"] or 0),
    )[0]


def build_inventory(asset_roots: Sequence[Path], root: Path) -> List[dict]:
    seen = set()
    items: List[dict] = []
    for r in asset_roots:
        if not r.is_dir():
            continue
        for p in iter_files(r):
            if p.suffix.lower() not in RASTER_EXTS or is_transient(p) or not p.is_file():
                continue
            real = os.path.realpath(p)
            if real in seen:
                continue
            seen.add(real)
            items.append(describe_file(p, root))
    return items


def build_consolidation_plan(items: List[dict], consolidated_folder: Optional[str] = None) -> dict:
    groups: Dict[str, List[dict]] = {}
    for item in items:
        groups.setdefault(item["groupKey"], []).append(item)

    plan_groups: Dict[str, dict] = {}
    delete_count = 0
    for key in sorted(groups):
        master = choose_master(groups[key])
        to_delete = [i for i in groups[key] if i is not master]
        chosen = dict(master)
        if consolidated_folder:
            chosen["proposedNewPath"] = f"{consolidated_folder.rstrip('/')}/gallery-{key}.{master['format']}"
        plan_groups[key] = {"chosen": chosen, "delete": to_delete}
        delete_count += len(to_delete)

    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "groupCount": len(plan_groups),
        "keptCount": len(plan_groups),
        "deleteCount": delete_count,
        "groups": plan_groups,
    }
