"""
Responsive variant generation.

For every large source image under the asset root this writes
  <group>-<width>w.<format>   for each ladder width <= intrinsic width
  <group>.<preferred>         base default at the largest of those widths
  <group>.meta.json           blurred placeholder data URI + aspect ratio

Idempotence is existence-based: a file that already exists is never
re-rendered, even if its source changed since. Pass overwrite=True to force.
"""

import concurrent.futures as cf
import os
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .errors import SourceReadError, TranscodeError
from .fsutil import write_json
from .imaging import (
    aspect_ratio,
    encode_with_magick,
    encode_with_pillow,
    open_source,
    placeholder_data_uri,
    read_size,
)
from .naming import (
    ORIGINALS_DIRNAME,
    SOURCE_EXTS,
    is_transient,
    is_variant_name,
    meta_name,
    variant_name,
)

# earlier wins when several sources share a stem
SOURCE_PRIORITY = [".jpg", ".jpeg", ".png", ".webp"]


class VariantSpec(NamedTuple):
    group: str
    width: int
    fmt: str
    quality: int
    path: Path


class GenerationReport:
    __slots__ = ('statuses', 'written', 'skipped', 'errors', 'sources')

    def __init__(self) -> None:
        self.statuses: List[str] = []
        self.written: List[Path] = []
        self.skipped: List[Path] = []
        self.errors: List[str] = []
        self.sources: List[Path] = []

    @property
    def ok(self) -> bool:
        return not self.errors


def widths_for(intrinsic_width: int, ladder: Sequence[int]) -> List[int]:
    return [w for w in ladder if w <= intrinsic_width]


def collect_sources(
    asset_root: Path,
    threshold_kib: float,
    preferred_format: str = "webp",
) -> Tuple[List[Path], List[str]]:
    """
    Qualifying sources under asset_root plus SKIP lines for the ones left out.
    Width-suffixed files are outputs, not sources, and are ignored silently.
    When a stem has several candidates, <stem>.<preferred_format> is the base
    default written by an earlier run and never feeds the group.
    """
    base_suffix = "." + preferred_format.lower()
    threshold = threshold_kib * 1024
    by_stem: Dict[Path, List[Path]] = {}
    statuses: List[str] = []
    for dirpath, dirnames, filenames in os.walk(asset_root):
        dirnames[:] = sorted(d for d in dirnames if d != ORIGINALS_DIRNAME and not d.startswith("."))
        for fn in sorted(filenames):
            p = Path(dirpath) / fn
            if p.suffix.lower() not in SOURCE_EXTS or is_transient(p) or is_variant_name(fn):
                continue
            if not p.is_file():
                continue
            size = p.stat().st_size
            if size < threshold:
                statuses.append(f"SKIP  below threshold: {fn} ({size / 1024:.0f} KiB)")
                continue
            by_stem.setdefault(p.with_suffix(""), []).append(p)

    sources: List[Path] = []
    for stem in sorted(by_stem):
        group = by_stem[stem]
        candidates = sorted(group, key=lambda p: (
            len(group) > 1 and p.suffix.lower() == base_suffix,
            SOURCE_PRIORITY.index(p.suffix.lower()),
        ))
        sources.append(candidates[0])
        for other in candidates[1:]:
            statuses.append(f"SKIP  {other.name}: group already fed by {candidates[0].name}")
    return sources, statuses


def plan_variants(
    src: Path,
    size: Tuple[int, int],
    widths: Sequence[int],
    formats: Sequence[str],
    quality: Dict[str, int],
    preferred_format: str,
) -> Tuple[List[VariantSpec], VariantSpec]:
    """Ladder variants for src and the base default spec."""
    stem = src.stem
    out_dir = src.parent
    group = str(src.with_suffix(""))
    usable = widths_for(size[0], widths)
    specs = [
        VariantSpec(group, w, fmt, quality[fmt], out_dir / variant_name(stem, w, fmt))
        for w in usable
        for fmt in formats
    ]
    base_w = max(usable) if usable else size[0]
    base = VariantSpec(group, base_w, preferred_format, quality[preferred_format],
                       out_dir / f"{stem}.{preferred_format}")
    return specs, base


def generate_variants_for(
    src: Path,
    widths: Sequence[int],
    formats: Sequence[str],
    quality: Dict[str, int],
    preferred_format: str,
    placeholder_width: int,
    overwrite: bool = False,
    dry_run: bool = False,
    im_bin: Optional[str] = None,
    requires_wrapper: bool = False,
) -> Tuple[str, List[Path], List[Path], List[str]]:
    """
    Returns (status_msg, written, skipped, errors) for one source.
    A failed encode is recorded and its siblings are still attempted.
    """
    try:
        size = read_size(src)
    except SourceReadError as e:
        return f"ERR   {src.name}: unreadable source ({e.reason})", [], [], [str(e)]

    specs, base = plan_variants(src, size, widths, formats, quality, preferred_format)
    if base.path != src:
        specs.append(base)
    meta_path = src.with_name(meta_name(src.stem))

    pending = [s for s in specs if overwrite or not s.path.exists()]
    skipped = [s.path for s in specs if s not in pending]
    need_meta = overwrite or not meta_path.exists()
    if not need_meta:
        skipped.append(meta_path)

    if not pending and not need_meta:
        return f"SKIP  {src.name} [{size[0]}x{size[1]}] up to date", [], skipped, []

    if dry_run:
        names = [s.path.name for s in pending] + ([meta_path.name] if need_meta else [])
        return f"DRY   {src.name} [{size[0]}x{size[1]}] would write {names}", [], skipped, []

    try:
        im = open_source(src)
    except SourceReadError as e:
        return f"ERR   {src.name}: unreadable source ({e.reason})", [], skipped, [str(e)]

    written: List[Path] = []
    errors: List[str] = []
    with im:
        for spec in pending:
            try:
                if im_bin:
                    encode_with_magick(im_bin, requires_wrapper, src, spec.path, spec.width, spec.fmt, spec.quality)
                else:
                    encode_with_pillow(im, spec.path, spec.width, spec.fmt, spec.quality)
            except TranscodeError as e:
                errors.append(str(e))
                continue
            written.append(spec.path)

        if need_meta:
            try:
                meta = {
                    "placeholder": placeholder_data_uri(im, width=placeholder_width),
                    "aspectRatio": aspect_ratio(size),
                }
                write_json(meta_path, meta)
            except (OSError, ValueError) as e:
                errors.append(f"{meta_path}: {e}")
            else:
                written.append(meta_path)

    done = sorted({s.width for s in specs if s.path in written and s is not base})
    if errors:
        status = f"ERR   {src.name} [{size[0]}x{size[1]}] {len(errors)} of {len(pending)} encodes failed"
    else:
        status = f"DONE  {src.name} [{size[0]}x{size[1]}] -> {[f'{w}w' for w in done]} ({len(written)} files)"
    return status, written, skipped, errors


def generate_variants(
    asset_root: Path,
    widths: Sequence[int],
    formats: Sequence[str],
    quality: Dict[str, int],
    preferred_format: str = "webp",
    threshold_kib: float = 200,
    placeholder_width: int = 20,
    threads: Optional[int] = None,
    overwrite: bool = False,
    dry_run: bool = False,
    im_bin: Optional[str] = None,
    requires_wrapper: bool = False,
) -> GenerationReport:
    """Generate variants for every qualifying source under asset_root."""
    report = GenerationReport()
    sources, statuses = collect_sources(asset_root, threshold_kib, preferred_format)
    report.sources = sources
    report.statuses.extend(statuses)

    work = [
        (src, widths, formats, quality, preferred_format, placeholder_width,
         overwrite, dry_run, im_bin, requires_wrapper)
        for src in sources
    ]
    with cf.ThreadPoolExecutor(max_workers=threads or os.cpu_count() or 4) as ex:
        futures = [ex.submit(generate_variants_for, *w) for w in work]
        for fut in cf.as_completed(futures):
            status, written, skipped, errors = fut.result()
            report.statuses.append(status)
            report.written.extend(written)
            report.skipped.extend(skipped)
            report.errors.extend(errors)
    return report
