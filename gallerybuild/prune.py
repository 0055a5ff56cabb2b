"""
Two-step pruning of unreferenced gallery variants.

plan_prune     reads a consolidation plan, scans the application sources and
               writes the list of candidates that are safe to delete. It never
               deletes anything.
execute_prune  reads only that persisted list and deletes, restricted to the
               managed asset roots.

Keep the two steps separate: the plan file is what gets reviewed.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple
from urllib.parse import quote

from .errors import ConfigError, DeletionError
from .fsutil import read_text
from .references import Lookup, collect_text_files, scan_references


class PruneCandidate(NamedTuple):
    path: str
    public_url: str
    base_name: str
    referenced: bool = False
    safe: bool = False
    matched_by: Optional[str] = None

    def as_json(self) -> dict:
        out = {"path": self.path, "publicUrl": self.public_url, "baseName": self.base_name}
        if self.matched_by:
            out["matchedBy"] = self.matched_by
        return out


# ---------- Planning ----------

def candidate_paths(plan: object) -> List[str]:
    """
    Paths proposed for removal. Accepts a consolidation plan
    ({"groups": {key: {"delete": [{"path": ...}]}}}), {"candidates": [...]}
    or a bare list; entries may be strings or {"path": ...} objects.
    """
    if isinstance(plan, dict) and isinstance(plan.get("groups"), dict):
        items: list = []
        for group in plan["groups"].values():
            items.extend(group.get("delete", []) if isinstance(group, dict) else [])
    elif isinstance(plan, dict) and isinstance(plan.get("candidates"), list):
        items = plan["candidates"]
    elif isinstance(plan, list):
        items = plan
    else:
        raise ConfigError("consolidation plan must have 'groups', 'candidates', or be a list of paths")

    out: List[str] = []
    for item in items:
        path = item.get("path") if isinstance(item, dict) else item
        if not isinstance(path, str) or not path.strip():
            raise ConfigError(f"invalid candidate entry: {item!r}")
        path = path.replace("\\", "/")
        if path not in out:
            out.append(path)
    return out


def to_public_url(rel_path: str, public_prefix: str) -> str:
    prefix = public_prefix.strip("/") + "/"
    rel = rel_path[len(prefix):] if rel_path.startswith(prefix) else rel_path.lstrip("/")
    return "/" + rel


def make_candidate(rel_path: str, public_prefix: str) -> PruneCandidate:
    return PruneCandidate(rel_path, to_public_url(rel_path, public_prefix), rel_path.rsplit("/", 1)[-1])


def needles_for(c: PruneCandidate) -> List[Tuple[str, str]]:
    """(label, text) pairs; any hit in the corpus keeps the file."""
    out = [("path", c.path), ("publicUrl", c.public_url), ("baseName", c.base_name)]
    encoded_url = quote(c.public_url)
    if encoded_url != c.public_url:
        out.append(("publicUrl", encoded_url))
    encoded_name = quote(c.base_name)
    if encoded_name != c.base_name:
        out.append(("baseName", encoded_name))
    return out


def build_corpus(files: Iterable[Path]) -> str:
    parts = []
    for fp in files:
        try:
            parts.append(read_text(fp))
        except OSError as e:
            # unreadable source cannot prove absence, keep it visible in the output
            print(f"SKIP  {fp}: {e}")
    return "\n\0\n".join(parts)


def classify_candidates(
    candidates: Sequence[PruneCandidate],
    corpus: str,
    resolved_urls: Set[str],
) -> List[PruneCandidate]:
    """
    A candidate is safe only if its path, public URL and bare filename are all
    absent from the corpus and no resolved reference points at it.
    """
    lowered = {u.lower() for u in resolved_urls}
    out: List[PruneCandidate] = []
    for c in candidates:
        matched_by = None
        for label, needle in needles_for(c):
            if needle and needle in corpus:
                matched_by = label
                break
        if matched_by is None and (c.public_url in resolved_urls or c.public_url.lower() in lowered):
            matched_by = "resolvedReference"
        referenced = matched_by is not None
        out.append(c._replace(referenced=referenced, safe=not referenced, matched_by=matched_by))
    return out


def plan_prune(
    plan: object,
    root: Path,
    public_root: Path,
    scan_dirs: Sequence[Path],
    text_extensions: Iterable[str],
    asset_prefixes: Sequence[str],
    lookup: Lookup,
    threads: Optional[int] = None,
) -> Tuple[dict, List[PruneCandidate]]:
    """Build the prune plan document. Reads sources only, never deletes."""
    public_prefix = Path(os.path.relpath(public_root, root)).as_posix()
    candidates = [make_candidate(p, public_prefix) for p in candidate_paths(plan)]

    exts = list(text_extensions)
    files = collect_text_files(scan_dirs, exts)
    corpus = build_corpus(files)
    scan = scan_references(scan_dirs, lookup, exts, asset_prefixes, root=root, threads=threads)

    classified = classify_candidates(candidates, corpus, scan.matched_urls)
    safe = [c for c in classified if c.safe]
    referenced = [c for c in classified if c.referenced]
    doc = {
        "generatedAt": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "totalCandidates": len(classified),
        "referencedCount": len(referenced),
        "safeToDeleteCount": len(safe),
        "scannedFiles": len(files),
        "examples": [c.as_json() for c in safe[:20]],
        "safeToDelete": [c.as_json() for c in safe],
        "referenced": [c.as_json() for c in referenced],
    }
    return doc, classified


# ---------- Execution ----------

class ExecutionReport:
    __slots__ = ('deleted', 'missing', 'refused', 'errors', 'removed_dirs', 'dry_run')

    def __init__(self, dry_run: bool = False) -> None:
        self.deleted: List[str] = []
        self.missing: List[str] = []
        self.refused: List[Tuple[str, str]] = []
        self.errors: List[DeletionError] = []
        self.removed_dirs: List[str] = []
        self.dry_run = dry_run

    @property
    def ok(self) -> bool:
        return not self.errors and not self.refused

    def as_json(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "deleted": self.deleted,
            "alreadyGone": self.missing,
            "skipped": [{"path": p, "reason": r} for p, r in self.refused],
            "errors": [{"path": e.path, "reason": e.reason} for e in self.errors],
            "removedDirectories": self.removed_dirs,
        }


def safe_to_delete_paths(doc: object) -> List[str]:
    if not isinstance(doc, dict) or not isinstance(doc.get("safeToDelete"), list):
        raise ConfigError("prune candidates file must contain a 'safeToDelete' list")
    out = []
    for item in doc["safeToDelete"]:
        path = item.get("path") if isinstance(item, dict) else item
        if not isinstance(path, str) or not path:
            raise ConfigError(f"invalid safeToDelete entry: {item!r}")
        out.append(path)
    return out


def resolve_candidate(root: Path, rel_path: str) -> Path:
    """Absolute, normalised path; directory links are resolved, the final entry is not."""
    p = Path(rel_path)
    p = Path(os.path.normpath(p if p.is_absolute() else root / p))
    return p.parent.resolve() / p.name


def within_roots(path: Path, roots: Sequence[Path]) -> bool:
    return any(r in path.parents for r in roots)


def remove_empty_dirs(start: Path) -> List[Path]:
    """Post-order removal of empty directories below start (start itself is kept)."""
    removed: List[Path] = []
    if not start.is_dir():
        return removed
    for dirpath, dirnames, filenames in os.walk(start, topdown=False):
        d = Path(dirpath)
        if d == start or d.is_symlink():
            continue
        try:
            if not any(d.iterdir()):
                d.rmdir()
                removed.append(d)
        except OSError:
            continue
    return removed


def execute_prune(
    doc: object,
    root: Path,
    managed_roots: Sequence[Path],
    dry_run: bool = False,
) -> ExecutionReport:
    """Delete the planned files that still exist inside the managed roots."""
    report = ExecutionReport(dry_run)
    roots = [r.resolve() for r in managed_roots]
    for rel_path in safe_to_delete_paths(doc):
        target = resolve_candidate(root.resolve(), rel_path)
        if not within_roots(target, roots):
            report.refused.append((rel_path, "outside managed asset roots"))
            continue
        if not os.path.lexists(target):
            report.missing.append(rel_path)
            continue
        if target.is_dir() and not target.is_symlink():
            report.refused.append((rel_path, "is a directory"))
            continue
        if dry_run:
            report.deleted.append(rel_path)
            continue
        try:
            target.unlink()
        except OSError as e:
            report.errors.append(DeletionError(rel_path, str(e)))
            continue
        report.deleted.append(rel_path)

    if not dry_run:
        for r in roots:
            report.removed_dirs.extend(
                Path(os.path.relpath(d, root.resolve())).as_posix() for d in remove_empty_dirs(r)
            )
    return report
