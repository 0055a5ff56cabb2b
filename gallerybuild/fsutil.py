import json
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, Iterable


def ensure_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def tmp_path_for(target: Path) -> Path:
    # hidden, unique per call, real suffix kept last for encoders that sniff it
    return target.with_name(f".{target.stem}.{uuid.uuid4().hex[:8]}.tmp{target.suffix}")


def write_bytes_atomic(target: Path, data: bytes) -> None:
    ensure_dir(target)
    tmp = tmp_path_for(target)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, target)
    except OSError:
        if tmp.exists():
            tmp.unlink()
        raise


def write_text_atomic(target: Path, text: str) -> None:
    write_bytes_atomic(target, text.encode("utf-8"))


def write_json(target: Path, data: Any) -> None:
    write_text_atomic(target, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def backup_file(target: Path) -> Path:
    """Copy target to target.bak and return the backup path."""
    backup = target.with_name(target.name + ".bak")
    shutil.copy2(target, backup)
    return backup


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_text(encoding="latin-1")


def append_log(log_file: Path, lines: Iterable[str]) -> None:
    ensure_dir(log_file)
    with open(log_file, "a", encoding="utf-8") as log:
        for line in lines:
            log.write(f"{line}\n")
