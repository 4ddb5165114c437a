#!/usr/bin/env python3
"""
Report & Tracker Stores
=======================
File-backed persistence for the published snapshot and the continuity
tracker.  Every write goes to a temp file in the target directory and is
moved into place with os.replace, so readers never see a partial file.

Layout under snapshots_dir:
    latest_{kind}.json
    {YYYY-MM-DD}/{kind}.json
    engine_tracker.json
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError

from schemas import TrackerState

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent


class ReportStore(Protocol):
    def load_latest(self, kind: str) -> Optional[dict]: ...

    def save(self, date: str, kind: str, snapshot: dict, force: bool = False) -> Path: ...


class TrackerStore(Protocol):
    def load(self) -> TrackerState: ...

    def save(self, state: TrackerState) -> Path: ...


class ReportExistsError(FileExistsError):
    """A dated report already exists and force was not given."""


def atomic_write_json(path: Path, data) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return path


def _resolve(p: str | Path) -> Path:
    p = Path(p)
    return p if p.is_absolute() else ROOT / p


class FileReportStore:
    """Snapshots as JSON files: one 'latest' pointer plus a dated archive."""

    def __init__(self, base_dir: str | Path = "snapshots"):
        self.base_dir = _resolve(base_dir)

    def latest_path(self, kind: str) -> Path:
        return self.base_dir / f"latest_{kind}.json"

    def dated_path(self, date: str, kind: str) -> Path:
        return self.base_dir / date / f"{kind}.json"

    def load_latest(self, kind: str) -> Optional[dict]:
        path = self.latest_path(kind)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Unreadable report {path.name}: {e}")
            return None

    def save(self, date: str, kind: str, snapshot: dict, force: bool = False) -> Path:
        dated = self.dated_path(date, kind)
        if dated.exists() and not force:
            raise ReportExistsError(f"{dated} already exists (use force to overwrite)")
        atomic_write_json(dated, snapshot)
        atomic_write_json(self.latest_path(kind), snapshot)
        logger.info(f"Report saved: {dated}", extra={"phase": "persist"})
        return dated


class FileTrackerStore:
    def __init__(self, path: str | Path = "snapshots/engine_tracker.json"):
        self.path = _resolve(path)

    def load(self) -> TrackerState:
        """Stored state, or a fresh one when missing or unreadable."""
        if not self.path.exists():
            return TrackerState()
        try:
            with open(self.path, encoding="utf-8") as f:
                return TrackerState.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Tracker unreadable, starting fresh: {e}")
            return TrackerState()

    def save(self, state: TrackerState) -> Path:
        return atomic_write_json(self.path, state.model_dump(mode="json"))
