"""
Image manifest: public URL lookup table consumed by the rendering code.

    "/gallery/sunset":              "/gallery/sunset-320w.webp"   group default
    "/gallery/sunset-320w.webp":    "/gallery/sunset-320w.webp"   identity
    "/gallery/sunset.meta.json":    "/gallery/sunset.meta.json"   sidecar
    ...plus a lowercase copy of every key.

The table is rebuilt from scratch on every run; the previous file is kept
next to it as <manifest>.bak.
"""

import json
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .fsutil import backup_file, read_json, write_json, write_text_atomic
from .naming import (
    LEGACY_FORMATS,
    MODERN_FORMATS,
    VariantDescriptor,
    build_group_index,
    is_modern,
    meta_name,
    url_to_path,
)


class ManifestEntry(NamedTuple):
    group: str
    default: str
    variants: List[str]
    meta: Optional[str]
    aspect_ratio: Optional[float]
    placeholder: Optional[str]


def format_order(preferred_format: str = "webp") -> List[str]:
    order = [preferred_format] if preferred_format in MODERN_FORMATS else []
    order += [f for f in MODERN_FORMATS if f not in order]
    return order + [f for f in LEGACY_FORMATS if f not in order]


def pick_default(variants: Sequence[VariantDescriptor], order: Sequence[str]) -> VariantDescriptor:
    """
    Smallest-width modern variant, widening outward; un-suffixed files come
    after every sized one. A legacy file is only chosen when the group has no
    modern file at all.
    """
    def rank(d: VariantDescriptor) -> Tuple[float, int, str]:
        width = d.width if d.width is not None else float("inf")
        fmt_rank = order.index(d.fmt) if d.fmt in order else len(order)
        return (width, fmt_rank, d.url)

    modern = [d for d in variants if is_modern(d.fmt)]
    return min(modern or list(variants), key=rank)


def read_sidecar(path: Path) -> Tuple[Optional[float], Optional[str]]:
    try:
        data = read_json(path)
    except (OSError, ValueError):
        return None, None
    if not isinstance(data, dict):
        return None, None
    ratio = data.get("aspectRatio")
    placeholder = data.get("placeholder")
    return (float(ratio) if isinstance(ratio, (int, float)) else None,
            placeholder if isinstance(placeholder, str) else None)


def build_entries(
    index: Dict[str, List[VariantDescriptor]],
    public_root: Path,
    preferred_format: str = "webp",
) -> List[ManifestEntry]:
    order = format_order(preferred_format)
    entries: List[ManifestEntry] = []
    for group in sorted(index):
        variants = sorted(index[group], key=lambda d: d.url)
        default = pick_default(variants, order)
        meta_url = meta_name(group)
        meta_path = url_to_path(meta_url, public_root)
        ratio, placeholder = (None, None)
        if meta_path.is_file():
            ratio, placeholder = read_sidecar(meta_path)
        else:
            meta_url = None
        entries.append(ManifestEntry(group, default.url, [d.url for d in variants],
                                     meta_url, ratio, placeholder))
    return entries


def build_table(entries: Sequence[ManifestEntry]) -> Dict[str, str]:
    table: Dict[str, str] = {}
    for e in entries:
        table[e.group] = e.default
        for url in e.variants:
            table[url] = url
        if e.meta:
            table[e.meta] = e.meta
    # lowercase copies never shadow an exact key
    for key, value in list(table.items()):
        table.setdefault(key.lower(), value)
    return dict(sorted(table.items()))


def verify_table(table: Dict[str, str], public_root: Path) -> List[str]:
    """Values that do not exist on disk. Empty for a sound manifest."""
    return sorted({v for v in table.values() if not url_to_path(v, public_root).is_file()})


def render_module(table: Dict[str, str]) -> str:
    lines = ["/* Auto-generated image manifest. Regenerate with: gallerybuild build-manifest */",
             "export default {"]
    for k, v in table.items():
        lines.append(f"  {json.dumps(k, ensure_ascii=False)}: {json.dumps(v, ensure_ascii=False)},")
    lines.append("};")
    return "\n".join(lines) + "\n"


def write_manifest(out: Path, table: Dict[str, str]) -> Optional[Path]:
    """Write the table (JSON, or a JS/TS module by extension); returns the backup path."""
    backup = backup_file(out) if out.exists() else None
    if out.suffix.lower() in {".ts", ".js", ".mjs"}:
        write_text_atomic(out, render_module(table))
    else:
        write_json(out, table)
    return backup


def load_manifest(path: Path) -> Dict[str, str]:
    """Read a JSON manifest, or the object literal of a generated module."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".ts", ".js", ".mjs"}:
        body = text[text.index("{"):text.rindex("}") + 1]
        # generated modules have a trailing comma after the last entry
        body = body.rstrip("}").rstrip().rstrip(",") + "}"
        return json.loads(body)
    return json.loads(text)


def entries_as_json(entries: Sequence[ManifestEntry]) -> Dict[str, dict]:
    return {
        e.group: {
            "default": e.default,
            "variants": e.variants,
            "meta": e.meta,
            "aspectRatio": e.aspect_ratio,
            "placeholder": e.placeholder,
        }
        for e in entries
    }


def build_manifest(
    public_root: Path,
    out: Path,
    preferred_format: str = "webp",
    details_out: Optional[Path] = None,
) -> Tuple[Dict[str, str], List[ManifestEntry], Optional[Path]]:
    """Index public_root, write the manifest (and optional details) and return them."""
    index = build_group_index(public_root)
    entries = build_entries(index, public_root, preferred_format)
    table = build_table(entries)
    backup = write_manifest(out, table)
    if details_out is not None:
        write_json(details_out, entries_as_json(entries))
    return table, entries, backup
