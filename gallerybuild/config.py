"""
Pipeline configuration.

Settings come from built-in defaults, then an optional JSON file
(gallerybuild.json in the project root, or --config), then CLI flags.
Example gallerybuild.json:

  {
    "publicRoot": "public",
    "assetRoots": ["public/gallery"],
    "widths": [320, 640, 1024, 1920],
    "formats": ["avif", "webp", "jpg"],
    "quality": {"avif": 50, "webp": 80, "jpg": 82, "png": 90},
    "budgets": {"320": {"avif": 45, "webp": 60, "jpg": 75}}
  }
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError
from .naming import LEGACY_FORMATS, MODERN_FORMATS

CONFIG_FILENAME = "gallerybuild.json"
KNOWN_FORMATS = set(MODERN_FORMATS) | set(LEGACY_FORMATS)

DEFAULTS: Dict[str, Any] = {
    "publicRoot": "public",
    "assetRoots": ["public/gallery"],
    "widths": [320, 400, 640, 800, 1024, 1200, 1600, 1920],
    "formats": ["avif", "webp", "jpg"],
    "preferredFormat": "webp",
    "quality": {"avif": 50, "webp": 80, "jpg": 82, "png": 90},
    "thresholdKiB": 200,
    "placeholderWidth": 20,
    # Loose enough for the current baseline; tighten gradually.
    "budgets": {
        "320": {"avif": 45, "webp": 60, "jpg": 75},
        "400": {"avif": 65, "webp": 85, "jpg": 110},
        "640": {"avif": 120, "webp": 160, "jpg": 190},
        "800": {"avif": 150, "webp": 200, "jpg": 250},
        "1024": {"avif": 200, "webp": 260, "jpg": 320},
        "1200": {"avif": 240, "webp": 320, "jpg": 380},
        "1600": {"avif": 310, "webp": 420, "jpg": 560},
        "1920": {"avif": 350, "webp": 500, "jpg": 750},
    },
    "scanDirs": ["src", "scripts", "templates"],
    "textExtensions": [".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".css", ".html"],
    "assetPrefixes": ["images", "assets", "gallery", "icons", "logos", "backgrounds", "clients"],
    "manifestPath": "src/generated/imageManifest.json",
}


class PipelineConfig:
    __slots__ = (
        'root', 'public_root', 'asset_roots', 'widths', 'formats', 'preferred_format',
        'quality', 'threshold_kib', 'placeholder_width', 'budgets', 'scan_dirs',
        'text_extensions', 'asset_prefixes', 'manifest_path'
    )

    def __init__(self, **kw: Any) -> None:
        for k, v in kw.items():
            setattr(self, k, v)

    @property
    def modern_formats(self) -> List[str]:
        return [f for f in self.formats if f in MODERN_FORMATS]


def parse_widths(value: Any) -> List[int]:
    """Sorted, de-duplicated positive widths from a list or "320,640" string."""
    if isinstance(value, str):
        value = [x for x in value.split(",") if x.strip()]
    try:
        widths = sorted({int(x) for x in value})
    except (TypeError, ValueError):
        raise ConfigError(f"invalid width ladder: {value!r} (example: 320,640,1024)")
    if not widths or widths[0] <= 0:
        raise ConfigError(f"width ladder must contain positive integers: {value!r}")
    return widths


def parse_formats(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [x for x in value.split(",") if x.strip()]
    out: List[str] = []
    for f in value or []:
        f = str(f).strip().lower().lstrip(".")
        if f == "jpeg":
            f = "jpg"
        if f not in KNOWN_FORMATS:
            raise ConfigError(f"unsupported format: {f!r} (known: {', '.join(sorted(KNOWN_FORMATS))})")
        if f not in out:
            out.append(f)
    if not out:
        raise ConfigError("at least one target format is required")
    return out


def parse_budgets(value: Any) -> Dict[Tuple[int, str], float]:
    """{"320": {"webp": 60}} -> {(320, "webp"): 60.0}"""
    if not isinstance(value, dict):
        raise ConfigError("budgets must be an object of width -> {format: KiB}")
    table: Dict[Tuple[int, str], float] = {}
    for width, per_format in value.items():
        if not isinstance(per_format, dict):
            raise ConfigError(f"budgets[{width!r}] must be an object of format -> KiB")
        try:
            w = int(width)
            for fmt, kib in per_format.items():
                fmt = "jpg" if fmt == "jpeg" else fmt
                table[(w, fmt)] = float(kib)
        except (TypeError, ValueError):
            raise ConfigError(f"invalid budget entry for width {width!r}: {per_format!r}")
    return table


def parse_quality(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        raise ConfigError("quality must be an object of format -> 1..100")
    out: Dict[str, int] = {}
    for fmt, q in value.items():
        try:
            q = int(q)
        except (TypeError, ValueError):
            raise ConfigError(f"invalid quality for {fmt}: {q!r}")
        if not 1 <= q <= 100:
            raise ConfigError(f"quality for {fmt} must be between 1 and 100, got {q}")
        out["jpg" if fmt == "jpeg" else fmt] = q
    return out


def _string_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data[key]
    if isinstance(value, str) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{key} must be a list of strings")
    return list(value)


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read config {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    unknown = set(data) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"unknown config keys in {path}: {', '.join(sorted(unknown))}")
    return data


def build_config(root: Path, overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """Merge defaults with overrides and validate everything up front."""
    data = dict(DEFAULTS)
    data["quality"] = dict(DEFAULTS["quality"])
    for k, v in (overrides or {}).items():
        if v is None:
            continue
        if k == "quality":
            data["quality"].update(v)
        else:
            data[k] = v

    formats = parse_formats(data["formats"])
    preferred = str(data["preferredFormat"]).lower()
    if preferred not in KNOWN_FORMATS:
        raise ConfigError(f"unsupported preferredFormat: {preferred!r}")
    quality = parse_quality(data["quality"])
    missing_q = [f for f in formats + [preferred] if f not in quality]
    if missing_q:
        raise ConfigError(f"no quality configured for: {', '.join(missing_q)}")

    try:
        threshold = float(data["thresholdKiB"])
        placeholder_width = int(data["placeholderWidth"])
    except (TypeError, ValueError):
        raise ConfigError("thresholdKiB and placeholderWidth must be numbers")
    if threshold < 0 or placeholder_width <= 0:
        raise ConfigError("thresholdKiB must be >= 0 and placeholderWidth > 0")

    root = root.resolve()
    exts = [e.lower() if e.startswith(".") else "." + e.lower() for e in _string_list(data, "textExtensions")]
    return PipelineConfig(
        root=root,
        public_root=root / data["publicRoot"],
        asset_roots=[root / r for r in _string_list(data, "assetRoots")],
        widths=parse_widths(data["widths"]),
        formats=formats,
        preferred_format=preferred,
        quality=quality,
        threshold_kib=threshold,
        placeholder_width=placeholder_width,
        budgets=parse_budgets(data["budgets"]),
        scan_dirs=[root / d for d in _string_list(data, "scanDirs")],
        text_extensions=set(exts),
        asset_prefixes=_string_list(data, "assetPrefixes"),
        manifest_path=root / data["manifestPath"],
    )


def load_config(root: Path, config_path: Optional[Path] = None,
                overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """Read config_path (or root/gallerybuild.json when present) and apply overrides."""
    data: Dict[str, Any] = {}
    if config_path is not None:
        data = load_config_file(config_path)
    elif (root / CONFIG_FILENAME).exists():
        data = load_config_file(root / CONFIG_FILENAME)
    merged = dict(data)
    for k, v in (overrides or {}).items():
        if v is not None:
            merged[k] = v
    return build_config(root, merged)
