"""
Image reference scanning over application source text.

Two independent passes:
  extract_literals  cheap regex pull of "/..." string literals and url(...)
  classify_literal  decides which literals are image references

Every kept literal is percent-decoded and resolved against the lookup table:
exact key, lowercase key, then (extension-less only) each known extension.
"""

import concurrent.futures as cf
import os
import re
import threading
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple
from urllib.parse import unquote

from .fsutil import read_text
from .manifest import build_entries, build_table, load_manifest
from .naming import build_group_index, iter_files, public_url

IMAGE_EXTS = ("webp", "avif", "jpg", "jpeg", "png", "svg", "gif")
# extension priority when an extension-less literal is resolved
RESOLVE_EXTS = (".webp", ".avif", ".jpg", ".jpeg", ".png", ".svg", ".gif")

EXCLUDED_DIRS = {"node_modules", "dist", "build", "coverage", "vendor", "__pycache__"}

LITERAL_RE = re.compile(r"""(['"`])(/[\w%.,\- /@()+]*?)\1""")
CSS_URL_RE = re.compile(r"""url\(\s*(/[^)'"\s]+)\s*\)""")
IMAGE_LITERAL_RE = re.compile(r"\.(?:%s)$" % "|".join(IMAGE_EXTS), re.IGNORECASE)
SRCSET_DESCRIPTOR_RE = re.compile(r"\s+\d+(?:\.\d+)?[wx]$")
HAS_EXT_RE = re.compile(r"\.[A-Za-z0-9]{2,5}$")

FOUND = "found"
FOUND_CASE_INSENSITIVE = "found_case_insensitive"
FOUND_WITH_EXTENSION = "found_with_extension"
MISSING = "missing"


class ReferenceRecord(NamedTuple):
    source: str
    raw: str
    decoded: str
    status: str
    match: Optional[str]

    @property
    def found(self) -> bool:
        return self.status != MISSING


class ScanResult(NamedTuple):
    records: List[ReferenceRecord]
    scanned_files: List[Path]

    @property
    def found(self) -> List[ReferenceRecord]:
        return [r for r in self.records if r.found]

    @property
    def missing(self) -> List[ReferenceRecord]:
        return [r for r in self.records if not r.found]

    @property
    def matched_urls(self) -> Set[str]:
        return {r.match for r in self.records if r.match}


# ---------- Source files ----------

def collect_text_files(scan_dirs: Iterable[Path], text_extensions: Iterable[str]) -> List[Path]:
    exts = {e.lower() for e in text_extensions}
    files: List[Path] = []
    for d in scan_dirs:
        if not d.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(d):
            dirnames[:] = sorted(
                n for n in dirnames if not n.startswith(".") and n not in EXCLUDED_DIRS
            )
            for fn in sorted(filenames):
                p = Path(dirpath) / fn
                if p.suffix.lower() in exts and p.is_file():
                    files.append(p)
    return files


# ---------- Extraction and filtering ----------

def extract_literals(text: str) -> List[str]:
    """Every '/'-rooted quoted literal and CSS url() value, in order of appearance."""
    found = [m.group(2) for m in LITERAL_RE.finditer(text)]
    found += [m.group(1) for m in CSS_URL_RE.finditer(text)]
    return found


def asset_prefix_pattern(prefixes: Sequence[str]) -> re.Pattern:
    alts = "|".join(re.escape(p.strip("/")) for p in prefixes if p.strip("/"))
    # the prefix must be followed by a further segment, so page routes like "/gallery" stay out
    return re.compile(r"/(?:%s)/[^/]" % (alts or r"(?!)"), re.IGNORECASE)


def classify_literal(literal: str, prefix_re: re.Pattern) -> List[str]:
    """
    Image references contained in one literal: the literal itself when it ends
    in an image extension, each URL of a srcset list, or an extension-less path
    that sits under a known asset prefix. Anything else yields nothing.
    """
    if literal.startswith("//"):
        return []
    if "," in literal and IMAGE_LITERAL_RE.search(literal.split(",")[0].strip().split(" ")[0]):
        out: List[str] = []
        for part in literal.split(","):
            url = SRCSET_DESCRIPTOR_RE.sub("", part.strip())
            if url.startswith("/") and IMAGE_LITERAL_RE.search(url):
                out.append(url)
        return out
    candidate = SRCSET_DESCRIPTOR_RE.sub("", literal.strip())
    if IMAGE_LITERAL_RE.search(candidate):
        return [candidate]
    if HAS_EXT_RE.search(candidate):
        return []
    decoded = unquote(candidate)
    if prefix_re.search(candidate) or prefix_re.search(decoded):
        return [candidate.rstrip("/")]
    return []


# ---------- Resolution ----------

class Lookup:
    """Exact and lowercase views of a URL table."""

    def __init__(self, table: Dict[str, str]) -> None:
        self.exact = dict(table)
        self.lower: Dict[str, str] = {}
        for k, v in table.items():
            self.lower.setdefault(k.lower(), v)

    def __len__(self) -> int:
        return len(self.exact)

    def resolve(self, literal: str) -> Tuple[str, Optional[str]]:
        raw = literal
        decoded = unquote(literal)
        forms = [raw] if decoded == raw else [raw, decoded]
        for v in forms:
            if v in self.exact:
                return FOUND, self.exact[v]
        for v in forms:
            if v.lower() in self.lower:
                return FOUND_CASE_INSENSITIVE, self.lower[v.lower()]
        for v in forms:
            if HAS_EXT_RE.search(v.rsplit("/", 1)[-1]):
                continue
            for ext in RESOLVE_EXTS:
                if v + ext in self.exact:
                    return FOUND_WITH_EXTENSION, self.exact[v + ext]
                if (v + ext).lower() in self.lower:
                    return FOUND_WITH_EXTENSION, self.lower[(v + ext).lower()]
        return MISSING, None


def lookup_from_public_root(public_root: Path, preferred_format: str = "webp") -> Lookup:
    """Manifest table built in memory plus identity entries for every other public file."""
    table = build_table(build_entries(build_group_index(public_root), public_root, preferred_format))
    if public_root.is_dir():
        for p in iter_files(public_root):
            if p.is_file():
                table.setdefault(public_url(p, public_root), public_url(p, public_root))
    return Lookup(table)


def lookup_from_manifest(manifest_path: Path) -> Lookup:
    return Lookup(load_manifest(manifest_path))


# ---------- Scanning ----------

def scan_file(path: Path, root: Path, prefix_re: re.Pattern) -> List[Tuple[str, str]]:
    """(source, literal) pairs for one file. Unreadable files yield nothing."""
    try:
        text = read_text(path)
    except OSError:
        return []
    rel = Path(os.path.relpath(path, root)).as_posix()
    out: List[Tuple[str, str]] = []
    for literal in extract_literals(text):
        for ref in classify_literal(literal, prefix_re):
            out.append((rel, ref))
    return out


def scan_references(
    scan_dirs: Sequence[Path],
    lookup: Lookup,
    text_extensions: Iterable[str],
    asset_prefixes: Sequence[str],
    root: Optional[Path] = None,
    threads: Optional[int] = None,
) -> ScanResult:
    """Extract and resolve every image reference under scan_dirs."""
    root = root or Path.cwd()
    files = collect_text_files(scan_dirs, text_extensions)
    prefix_re = asset_prefix_pattern(asset_prefixes)

    seen: Set[Tuple[str, str]] = set()
    lock = threading.Lock()

    def work(p: Path) -> None:
        pairs = scan_file(p, root, prefix_re)
        with lock:
            seen.update(pairs)

    with cf.ThreadPoolExecutor(max_workers=threads or os.cpu_count() or 4) as ex:
        list(ex.map(work, files))

    records: List[ReferenceRecord] = []
    for source, literal in sorted(seen):
        status, match = lookup.resolve(literal)
        records.append(ReferenceRecord(source, literal, unquote(literal), status, match))
    return ScanResult(records, files)


def report_as_json(result: ScanResult) -> dict:
    missing = result.missing
    return {
        "summary": {
            "scannedFiles": len(result.scanned_files),
            "totalReferenced": len({r.raw for r in result.records}),
            "found": len({r.raw for r in result.found}),
            "missing": len({r.raw for r in missing}),
        },
        "report": [
            {
                "file": r.source,
                "reference": r.raw,
                "decoded": r.decoded,
                "status": r.status,
                "found": r.found,
                "match": r.match,
            }
            for r in result.records
        ],
    }
