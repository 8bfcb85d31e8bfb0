"""
Local disk storage for rendered report PDFs.
"""
from __future__ import annotations

import hashlib
import os
from pathlib import Path

DATA_DIR = Path(os.environ.get("DATA_DIR", "./data"))
REPORTS_DIR = DATA_DIR / "reports"


def ensure_dirs() -> None:
    REPORTS_DIR.mkdir(parents=True, exist_ok=True)


def sha256_bytes(data: bytes) -> str:
    """Compute sha256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def get_report_dir(job_id: str) -> Path:
    return REPORTS_DIR / job_id


def save_report(job_id: str, filename: str, data: bytes) -> Path:
    """Write a rendered report into the job's directory. Same name, same bytes: overwrite is harmless."""
    ensure_dirs()
    job_dir = get_report_dir(job_id)
    job_dir.mkdir(parents=True, exist_ok=True)
    path = job_dir / filename
    path.write_bytes(data)
    return path