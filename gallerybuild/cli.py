"""
Command line entry point: one sub-command per pipeline stage.

    gallerybuild generate-variants [ROOT ...] [--threshold KiB]
    gallerybuild build-manifest [--out PATH] [--details PATH]
    gallerybuild scan-references [DIR ...] [--allow-missing]
    gallerybuild check-budget [PATH ...] [--changed FILE]
    gallerybuild inventory [--out PATH]
    gallerybuild plan-prune --plan FILE [--out PATH]
    gallerybuild execute-prune --candidates FILE [--dry-run]
    gallerybuild repair-shims [ROOT] [--ensure PATH ...]
    gallerybuild create-shims --map FILE

Exit codes: 0 ok, 1 validation or per-file failures, 2 configuration error.
"""

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import __version__
from .budget import check_budget, read_changed_list
from .budget import report_as_json as budget_report
from .config import PipelineConfig, load_config
from .errors import ConfigError
from .fsutil import append_log, read_json, write_json
from .imaging import find_imagemagick_bin, supports_format
from .inventory import build_consolidation_plan, build_inventory
from .manifest import build_manifest, verify_table
from .prune import execute_prune, plan_prune
from .references import Lookup, lookup_from_manifest, lookup_from_public_root, scan_references
from .references import report_as_json as references_report
from .shims import create_shims, load_shim_map, repair_shims
from .variants import generate_variants

DEFAULT_INVENTORY_OUT = "reports/gallery-consolidation.json"
DEFAULT_PRUNE_OUT = "reports/gallery-prune-plan.json"


class StatusLog:
    """Prints status lines and keeps them for --log-file."""

    def __init__(self, log_file: Optional[Path] = None) -> None:
        self.log_file = log_file
        self.lines: List[str] = []

    def __call__(self, line: str) -> None:
        print(line)
        self.lines.append(line)

    def extend(self, lines: Sequence[str]) -> None:
        for line in lines:
            self(line)

    def flush(self) -> None:
        if self.log_file and self.lines:
            append_log(self.log_file, self.lines)
        self.lines = []


def read_input_json(path: Path, what: str) -> Any:
    if not path.is_file():
        raise ConfigError(f"{what} not found: {path}")
    try:
        return read_json(path)
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read {what} {path}: {e}")


def on_off(flag: bool) -> str:
    return "on" if flag else "off"


# ---------- Sub-commands ----------

def reference_lookup(args: argparse.Namespace, cfg: PipelineConfig) -> Lookup:
    if not args.manifest:
        return lookup_from_public_root(cfg.public_root, cfg.preferred_format)
    path = cfg.root / args.manifest
    if not path.is_file():
        raise ConfigError(f"manifest not found: {path}")
    try:
        return lookup_from_manifest(path)
    except ValueError as e:
        raise ConfigError(f"could not parse manifest {path}: {e}")


def cmd_generate_variants(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    roots = [cfg.root / r for r in args.roots] if args.roots else cfg.asset_roots
    for r in roots:
        if not r.is_dir():
            raise ConfigError(f"asset root not found: {r}")

    im_bin, requires_wrapper = (None, False)
    if args.imagemagick_bin:
        im_bin, requires_wrapper = find_imagemagick_bin(args.imagemagick_bin)
    else:
        unsupported = [f for f in cfg.formats + [cfg.preferred_format] if not supports_format(f)]
        if unsupported:
            raise ConfigError(f"this Pillow build cannot encode: {', '.join(unsupported)}")

    print(f"Variants: {cfg.widths} px, formats={cfg.formats}, base={cfg.preferred_format}, threshold={cfg.threshold_kib:g} KiB")
    print(f"Threads={args.threads or os.cpu_count()}, overwrite={on_off(args.overwrite)}, dry-run={on_off(args.dry_run)}, "
          f"encoder={im_bin or 'pillow'}")

    failed = 0
    for r in roots:
        report = generate_variants(
            r,
            widths=cfg.widths,
            formats=cfg.formats,
            quality=cfg.quality,
            preferred_format=cfg.preferred_format,
            threshold_kib=cfg.threshold_kib,
            placeholder_width=cfg.placeholder_width,
            threads=args.threads,
            overwrite=args.overwrite,
            dry_run=args.dry_run,
            im_bin=im_bin,
            requires_wrapper=requires_wrapper,
        )
        log.extend(report.statuses)
        for err in report.errors:
            print(f"ERR   {err}", file=sys.stderr)
        failed += len(report.errors)
        print(f"{r}: {len(report.sources)} source(s), {len(report.written)} written, "
              f"{len(report.skipped)} already present, {len(report.errors)} error(s)")
    return 1 if failed else 0


def cmd_build_manifest(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    if not cfg.public_root.is_dir():
        raise ConfigError(f"public root not found: {cfg.public_root}")
    out = cfg.root / args.out if args.out else cfg.manifest_path
    details = cfg.root / args.details if args.details else None
    if args.dry_run:
        print(f"DRY   would write {out}")
        return 0

    table, entries, backup = build_manifest(cfg.public_root, out, cfg.preferred_format, details)
    if backup:
        log(f"DONE  previous manifest kept as {backup.name}")
    log(f"DONE  {out}  {len(entries)} group(s), {len(table)} key(s)")
    if details:
        log(f"DONE  {details}")

    unsound = verify_table(table, cfg.public_root)
    for url in unsound:
        print(f"ERR   manifest value missing on disk: {url}", file=sys.stderr)
    return 1 if unsound else 0


def cmd_scan_references(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    dirs = [cfg.root / d for d in args.dirs] if args.dirs else cfg.scan_dirs
    lookup = reference_lookup(args, cfg)
    result = scan_references(dirs, lookup, cfg.text_extensions, cfg.asset_prefixes,
                             root=cfg.root, threads=args.threads)

    for r in result.missing:
        log(f"ERR   {r.source}  missing image: {r.raw}")
    print(f"Scanned {len(result.scanned_files)} file(s): "
          f"{len(result.records)} reference(s), {len(result.found)} found, {len(result.missing)} missing")
    if args.report:
        write_json(cfg.root / args.report, references_report(result))
        print(f"Wrote report: {args.report}")
    return 1 if result.missing and not args.allow_missing else 0


def changed_paths(args: argparse.Namespace) -> List[str]:
    if args.changed:
        path = Path(args.root).resolve() / args.changed
        if not path.is_file():
            raise ConfigError(f"changed file list not found: {path}")
        return read_changed_list(path.read_text(encoding="utf-8"))
    if args.paths:
        return list(args.paths)
    return read_changed_list(os.environ.get("CHANGED_FILES", ""))


def cmd_check_budget(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    changed = changed_paths(args)
    findings, checked = check_budget(cfg.root, changed, cfg.budgets, cfg.widths, cfg.formats, cfg.asset_roots)
    if args.report:
        write_json(cfg.root / args.report, budget_report(findings, checked))
    if not checked:
        print("No changed gallery images to check.")
        return 0
    for f in findings:
        log(f"ERR   {f}")
    if findings:
        print(f"Image budget check failed: {len(findings)} finding(s) in {len(checked)} changed file(s)")
        return 1
    print(f"Image budget check passed ({len(checked)} changed file(s))")
    return 0


def cmd_inventory(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    items = build_inventory(cfg.asset_roots, cfg.root)
    plan = build_consolidation_plan(items, args.consolidated_folder)
    out = cfg.root / args.out
    write_json(out, plan)
    log(f"DONE  {out}  {len(items)} image(s), {plan['groupCount']} group(s), {plan['deleteCount']} duplicate(s)")
    return 0


def cmd_plan_prune(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    plan = read_input_json(cfg.root / args.plan, "consolidation plan")
    lookup = reference_lookup(args, cfg)
    doc, candidates = plan_prune(plan, cfg.root, cfg.public_root, cfg.scan_dirs, cfg.text_extensions,
                                 cfg.asset_prefixes, lookup, threads=args.threads)
    for c in candidates:
        if c.referenced:
            log(f"SKIP  {c.path}  referenced ({c.matched_by})")
    out = cfg.root / args.out
    write_json(out, doc)
    print(f"Scanned {doc['scannedFiles']} file(s): {doc['totalCandidates']} candidate(s), "
          f"{doc['referencedCount']} referenced, {doc['safeToDeleteCount']} safe to delete")
    print(f"Wrote prune plan: {out}")
    return 0


def cmd_execute_prune(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    doc = read_input_json(cfg.root / args.candidates, "prune candidates")
    report = execute_prune(doc, cfg.root, cfg.asset_roots, dry_run=args.dry_run)

    action = "DRY   would delete " if args.dry_run else "DONE  deleted "
    for p in report.deleted:
        log(f"{action}{p}")
    for p in report.missing:
        log(f"SKIP  {p}  already gone")
    for p, reason in report.refused:
        log(f"SKIP  {p}  {reason}")
    for e in report.errors:
        log(f"ERR   {e.path}  {e.reason}")
    for d in report.removed_dirs:
        log(f"DONE  removed empty directory {d}")
    print(f"Deleted: {len(report.deleted)}, already gone: {len(report.missing)}, "
          f"refused: {len(report.refused)}, errors: {len(report.errors)}, dry-run={on_off(args.dry_run)}")
    if args.report:
        write_json(cfg.root / args.report, report.as_json())
    return 0 if report.ok else 1


def cmd_repair_shims(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    root = cfg.root / args.tree if args.tree else cfg.public_root
    statuses, errors = repair_shims(root, [cfg.root / p for p in args.ensure])
    log.extend(statuses)
    print(f"Repaired {len(statuses) - len(errors)} shim(s), {len(errors)} error(s)")
    return 1 if errors else 0


def cmd_create_shims(args: argparse.Namespace, cfg: PipelineConfig, log: StatusLog) -> int:
    mapping = load_shim_map(read_input_json(cfg.root / args.map, "shim map"))
    statuses, errors = create_shims(cfg.public_root, mapping, dry_run=args.dry_run)
    log.extend(statuses)
    print(f"Shims: {len(mapping)} mapping(s), {len(errors)} error(s)")
    return 1 if errors else 0


# ---------- Argument parsing ----------

def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--root", default=".", help="Project root (paths are relative to it)")
    common.add_argument("--config", default=None, help="JSON config file (default: <root>/gallerybuild.json if present)")
    common.add_argument("--public-root", default=None, help="Public web root, relative to --root")
    common.add_argument("--log-file", default=None, help="Append status lines to this file")
    common.add_argument("--threads", type=int, default=None, help="Worker threads (default: CPU count)")
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gallerybuild", description="Static gallery image build pipeline.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)
    common = _common_parser()

    p = sub.add_parser("generate-variants", parents=[common], help="Render responsive variants and sidecars")
    p.add_argument("roots", nargs="*", help="Asset roots (default: assetRoots from config)")
    p.add_argument("--threshold", type=float, default=None, help="Minimum source size in KiB")
    p.add_argument("--widths", default=None, help="Width ladder, e.g. 320,640,1024")
    p.add_argument("--formats", default=None, help="Target formats, e.g. avif,webp,jpg")
    p.add_argument("--preferred-format", default=None, help="Format of the <group>.<ext> base default")
    p.add_argument("--overwrite", action="store_true", help="Regenerate files that already exist")
    p.add_argument("--dry-run", action="store_true", help="Show planned files only")
    p.add_argument("--imagemagick-bin", default=None, help='Encode with ImageMagick, e.g. "convert" or "magick"')
    p.set_defaults(func=cmd_generate_variants)

    p = sub.add_parser("build-manifest", parents=[common], help="Write the public URL lookup manifest")
    p.add_argument("--out", default=None, help="Manifest path (.json, .ts or .js)")
    p.add_argument("--details", default=None, help="Also write per-group details JSON")
    p.add_argument("--preferred-format", default=None, help="Modern format preferred on width ties")
    p.add_argument("--dry-run", action="store_true", help="Show the target path only")
    p.set_defaults(func=cmd_build_manifest)

    p = sub.add_parser("scan-references", parents=[common], help="Resolve image references in source text")
    p.add_argument("dirs", nargs="*", help="Directories to scan (default: scanDirs from config)")
    p.add_argument("--manifest", default=None, help="Resolve against this manifest instead of the public root")
    p.add_argument("--report", default=None, help="Write a JSON report")
    p.add_argument("--allow-missing", action="store_true", help="Exit 0 even when references are missing")
    p.set_defaults(func=cmd_scan_references)

    p = sub.add_parser("check-budget", parents=[common], help="Size gate for changed gallery images")
    p.add_argument("paths", nargs="*", help="Changed paths relative to --root")
    p.add_argument("--changed", default=None, help="File with one changed path per line")
    p.add_argument("--widths", default=None, help="Width ladder, e.g. 320,640,1024")
    p.add_argument("--formats", default=None, help="Required formats, e.g. avif,webp,jpg")
    p.add_argument("--report", default=None, help="Write a JSON report")
    p.set_defaults(func=cmd_check_budget)

    p = sub.add_parser("inventory", parents=[common], help="Group duplicate images into a consolidation plan")
    p.add_argument("--out", default=DEFAULT_INVENTORY_OUT, help="Consolidation plan path")
    p.add_argument("--consolidated-folder", default=None, help="Propose new paths under this public folder")
    p.set_defaults(func=cmd_inventory)

    p = sub.add_parser("plan-prune", parents=[common], help="List candidates that are safe to delete")
    p.add_argument("--plan", required=True, help="Consolidation plan or list of candidate paths")
    p.add_argument("--out", default=DEFAULT_PRUNE_OUT, help="Prune plan path")
    p.add_argument("--manifest", default=None, help="Resolve references against this manifest")
    p.set_defaults(func=cmd_plan_prune)

    p = sub.add_parser("execute-prune", parents=[common], help="Delete the safe candidates of a prune plan")
    p.add_argument("--candidates", required=True, help="Prune plan written by plan-prune")
    p.add_argument("--dry-run", action="store_true", help="List deletions only")
    p.add_argument("--report", default=None, help="Write a JSON report")
    p.set_defaults(func=cmd_execute_prune)

    p = sub.add_parser("repair-shims", parents=[common], help="Replace broken symlinks with placeholders")
    p.add_argument("tree", nargs="?", default=None, help="Tree to repair (default: public root)")
    p.add_argument("--ensure", action="append", default=[], help="Create a placeholder here when missing")
    p.set_defaults(func=cmd_repair_shims)

    p = sub.add_parser("create-shims", parents=[common], help="Link legacy URLs to canonical files")
    p.add_argument("--map", required=True, help="JSON object of legacy URL -> canonical URL")
    p.add_argument("--dry-run", action="store_true", help="Show planned links only")
    p.set_defaults(func=cmd_create_shims)
    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "publicRoot": args.public_root,
        "widths": getattr(args, "widths", None),
        "formats": getattr(args, "formats", None),
        "preferredFormat": getattr(args, "preferred_format", None),
        "thresholdKiB": getattr(args, "threshold", None),
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    root = Path(args.root).resolve()
    log = StatusLog(root / args.log_file if args.log_file else None)
    try:
        if not root.is_dir():
            raise ConfigError(f"root not found: {root}")
        if args.threads is not None and args.threads < 1:
            raise ConfigError(f"--threads must be a positive integer, got {args.threads}")
        config_path = root / args.config if args.config else None
        cfg = load_config(root, config_path, config_overrides(args))
        return args.func(args, cfg, log)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        log.flush()


if __name__ == "__main__":
    sys.exit(main())
