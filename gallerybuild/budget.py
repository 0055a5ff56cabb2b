"""
Differential size gate for gallery images.

Only the caller-supplied changed paths are checked, so the cost follows the
size of a reviewable change set rather than the whole tree.

  changed source   every ladder width <= intrinsic width needs all target
                   formats (MISSING_VARIANT); present ones must fit the
                   budget (BUDGET_EXCEEDED); unreadable -> INVALID_IMAGE
  changed legacy   every modern target format must exist at the same width
  variant          (MISSING_MODERN_SIBLING)
"""

import os
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from .errors import SourceReadError
from .imaging import read_size
from .naming import (
    META_SUFFIX,
    ORIGINALS_DIRNAME,
    SOURCE_EXTS,
    is_modern,
    is_transient,
    parse_variant,
    variant_name,
)

MISSING_VARIANT = "MISSING_VARIANT"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
MISSING_MODERN_SIBLING = "MISSING_MODERN_SIBLING"
INVALID_IMAGE = "INVALID_IMAGE"


class Finding(NamedTuple):
    code: str
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def bytes_to_kib(n: int) -> float:
    return n / 1024


def read_changed_list(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def normalize_rel(p: str) -> str:
    p = p.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p


def is_under(rel_path: str, roots: Sequence[str]) -> bool:
    return any(rel_path.startswith(r.rstrip("/") + "/") for r in roots)


class BudgetValidator:
    """Collects findings for a change set; never stops at the first failure."""

    def __init__(
        self,
        root: Path,
        budgets: Dict[Tuple[int, str], float],
        widths: Sequence[int],
        formats: Sequence[str],
        asset_roots: Sequence[Path],
    ) -> None:
        self.root = root
        self.budgets = budgets
        self.widths = list(widths)
        self.formats = list(formats)
        self.asset_roots = [Path(os.path.relpath(r, root)).as_posix() for r in asset_roots]
        self.findings: List[Finding] = []
        self.checked: List[str] = []

    def fail(self, code: str, path: str, message: str) -> None:
        self.findings.append(Finding(code, path, message))

    def relevant(self, changed: Iterable[str]) -> List[str]:
        out = []
        for p in changed:
            p = normalize_rel(p)
            if p.endswith(META_SUFFIX) or not is_under(p, self.asset_roots):
                continue
            # backups and editor leftovers never feed the generator
            if ORIGINALS_DIRNAME in p.split("/") or is_transient(Path(p)):
                continue
            if p not in out:
                out.append(p)
        return out

    def check_variant_budget(self, rel_path: str, width: int, fmt: str) -> None:
        abs_path = self.root / rel_path
        if not abs_path.is_file():
            return
        budget = self.budgets.get((width, fmt))
        if budget is None:
            return
        size_kib = bytes_to_kib(abs_path.stat().st_size)
        if size_kib > budget:
            self.fail(BUDGET_EXCEEDED, rel_path,
                      f"{rel_path} is {size_kib:.1f} KiB (budget {budget:g} KiB)")

    def check_source(self, rel_path: str) -> None:
        try:
            intrinsic_width, _ = read_size(self.root / rel_path)
        except SourceReadError:
            self.fail(INVALID_IMAGE, rel_path, f"Cannot read metadata for {rel_path}")
            return
        base = rel_path.rsplit(".", 1)[0]
        stem = base.rsplit("/", 1)[-1]
        parent = base[: len(base) - len(stem)]
        for w in self.widths:
            if w > intrinsic_width:
                continue
            for fmt in self.formats:
                variant = parent + variant_name(stem, w, fmt)
                if not (self.root / variant).is_file():
                    self.fail(MISSING_VARIANT, variant, f"{variant} (required for {rel_path})")
                    continue
                self.check_variant_budget(variant, w, fmt)

    def check_variant(self, rel_path: str) -> None:
        parsed = parse_variant(rel_path.rsplit("/", 1)[-1])
        if parsed is None:
            return
        stem, width, fmt = parsed
        if width not in self.widths:
            return
        self.check_variant_budget(rel_path, width, fmt)
        if is_modern(fmt):
            return
        parent = rel_path[: len(rel_path) - len(rel_path.rsplit("/", 1)[-1])]
        for modern in (f for f in self.formats if is_modern(f)):
            sibling = parent + variant_name(stem, width, modern)
            if not (self.root / sibling).is_file():
                self.fail(MISSING_MODERN_SIBLING, sibling, f"{sibling} (expected alongside {rel_path})")
                continue
            self.check_variant_budget(sibling, width, modern)

    def is_base_default(self, rel_path: str) -> bool:
        # <group>.webp next to a jpg/png source is generated output, not a source
        if not rel_path.lower().endswith(".webp"):
            return False
        base = rel_path[: -len(".webp")]
        return any((self.root / f"{base}{ext}").is_file() for ext in SOURCE_EXTS if ext != ".webp")

    def run(self, changed: Iterable[str]) -> List[Finding]:
        for rel_path in self.relevant(changed):
            name = rel_path.rsplit("/", 1)[-1]
            if not (self.root / rel_path).exists():
                # deleted in this change set
                continue
            self.checked.append(rel_path)
            if parse_variant(name) is not None:
                self.check_variant(rel_path)
            elif os.path.splitext(name)[1].lower() in SOURCE_EXTS and not self.is_base_default(rel_path):
                self.check_source(rel_path)
        return self.findings


def check_budget(
    root: Path,
    changed: Iterable[str],
    budgets: Dict[Tuple[int, str], float],
    widths: Sequence[int],
    formats: Sequence[str],
    asset_roots: Sequence[Path],
) -> Tuple[List[Finding], List[str]]:
    """Return (findings, checked paths) for the changed files."""
    validator = BudgetValidator(root, budgets, widths, formats, asset_roots)
    findings = validator.run(changed)
    return findings, validator.checked


def report_as_json(findings: Sequence[Finding], checked: Sequence[str], ok: Optional[bool] = None) -> dict:
    return {
        "ok": (not findings) if ok is None else ok,
        "checked": list(checked),
        "findings": [f._asdict() for f in findings],
    }
