import os
from pathlib import Path
from typing import Optional


def symlinks_supported(tmp_path: Path) -> bool:
    try:
        target = tmp_path / "target"
        target.mkdir()
        link = tmp_path / "link"
        link.symlink_to(target)
        return True
    except (OSError, NotImplementedError):
        return False


def create_files_with_ages(directory: Path, days: list[int], now: int, offsets: Optional[list[int]] = None, prefix: str = "file") -> list[Path]:
    """Create one file per entry in days, with atime and mtime that many days before now (plus optional seconds offsets)."""
    directory.mkdir(parents=True, exist_ok=True)
    files: list[Path] = []
    for idx, age in enumerate(days):
        f = directory / f"{prefix}{idx}.txt"
        f.write_text(str(idx))
        ts = now - age * 86_400 - (offsets[idx] if offsets else 0)
        os.utime(f, (ts, ts))
        files.append(f)
    return files
