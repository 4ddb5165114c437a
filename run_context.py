#!/usr/bin/env python3
"""
Run Context
===========
Per-run bookkeeping for the Alpha Selection Engine.  Every invocation of
the CLI gets a directory under runs/{run_id}/ holding:

    run.log           JSON lines from every module logger
    config.yaml       the validated config actually used
    universe.json     sanitized symbols, heavy subset, exclusion counts
    *.parquet         intermediate frames (sanitized universe, prelim rank, pool)
    meta.json         timings, git sha, package versions, run stats

The run id is the US/Eastern wall clock (YYYYMMDD_HHMMSS) so it lines up
with the trading date the snapshot is filed under.

Usage:
    ctx = RunContext()
    ctx.save_config(cfg)
    ctx.save_artifact("prelim_rank", prelim_df)
    ctx.log.info("Backfill done", extra={"phase": "backfill", "count": 57})
    ctx.save_metadata({"mode": snapshot["mode"]})
    ctx.close()
"""

import hashlib
import importlib.metadata
import json
import logging
import platform
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pandas as pd
import yaml

from stores import atomic_write_json

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"
ET = ZoneInfo("America/New_York")

# Config sections that change which tickers get selected
_HASHED_SECTIONS = ("universe", "scoring", "anti_churn", "quality_tiers",
                    "power_score", "regime", "tpg", "selection", "time_stop")

# Record attributes copied into each JSON log line when set via `extra=`
_LOG_EXTRAS = ("run_id", "phase", "step", "round", "ticker", "status", "count")

TRACKED_PACKAGES = ("requests", "yfinance", "pandas", "numpy", "pyarrow",
                    "openpyxl", "pyyaml", "pydantic")


def make_run_id(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ET).strftime("%Y%m%d_%H%M%S")


class _JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's own time."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "ts": stamp.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        entry.update({k: getattr(record, k) for k in _LOG_EXTRAS
                      if getattr(record, k, None) is not None})
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RunContext:
    """Run directory, logging handlers and artifact writers for one run."""

    def __init__(self, run_id: str | None = None, runs_dir: str | Path | None = None):
        self.started = datetime.now(timezone.utc)
        self.run_id = run_id or make_run_id(self.started)
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.log = logging.getLogger("alpha")
        self._handlers = self._attach_handlers()
        self.log.info("Run started", extra={"run_id": self.run_id, "phase": "init"})

    @property
    def et_date(self) -> str:
        return self.started.astimezone(ET).date().isoformat()

    def _attach_handlers(self) -> list[logging.Handler]:
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        # A previous context in the same process may not have been closed
        for h in [h for h in root.handlers if getattr(h, "_alpha_run", False)]:
            root.removeHandler(h)
            h.close()

        to_file = logging.FileHandler(self.run_dir / "run.log", encoding="utf-8")
        to_file.setFormatter(_JSONFormatter())
        to_console = logging.StreamHandler(sys.stdout)
        to_console.setLevel(logging.INFO)
        to_console.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S"))
        for h in (to_file, to_console):
            h._alpha_run = True
            root.addHandler(h)
        return [to_file, to_console]

    def close(self):
        root = logging.getLogger()
        for h in self._handlers:
            root.removeHandler(h)
            h.close()
        self._handlers = []

    # ---- artifacts ----

    def save_config(self, cfg: dict) -> Path:
        path = self.run_dir / "config.yaml"
        path.write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")
        self.log.info(f"Config snapshot saved (hash {self.config_hash(cfg)})",
                      extra={"phase": "init"})
        return path

    def config_hash(self, cfg: dict) -> str:
        """Short sha256 over the selection-relevant config sections only."""
        relevant = {k: cfg.get(k, {}) for k in _HASHED_SECTIONS}
        blob = json.dumps(relevant, sort_keys=True, default=str).encode()
        return hashlib.sha256(blob).hexdigest()[:12]

    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        path = self.run_dir / f"{name}.parquet"
        df.to_parquet(path, index=False)
        self.log.info(f"Artifact {name}: {len(df)} rows",
                      extra={"phase": "artifact", "step": name, "count": len(df)})
        return path

    def save_universe(self, kept: list, excluded_reasons: dict,
                      heavy: list | None = None) -> Path:
        data = {
            "kept_count": len(kept),
            "kept": sorted(kept),
            "heavy": list(heavy or []),
            "excluded_reasons": excluded_reasons,
            "excluded_total": sum(excluded_reasons.values()),
        }
        return atomic_write_json(self.run_dir / "universe.json", data)

    def save_metadata(self, extra: dict | None = None) -> Path:
        """Write meta.json; call once the run has finished or aborted."""
        finished = datetime.now(timezone.utc)
        meta = {
            "run_id": self.run_id,
            "et_date": self.et_date,
            "started": self.started.isoformat(),
            "finished": finished.isoformat(),
            "elapsed_seconds": round((finished - self.started).total_seconds(), 1),
            "git_sha": _git_sha(),
            "python": platform.python_version(),
            "platform": platform.platform(),
            "packages": package_versions(),
            **(extra or {}),
        }
        path = atomic_write_json(self.run_dir / "meta.json", meta)
        self.log.info("Run metadata saved", extra={"run_id": self.run_id, "phase": "persist"})
        return path


def _git_sha() -> str:
    try:
        out = subprocess.run(["git", "rev-parse", "--short", "HEAD"], cwd=ROOT,
                             capture_output=True, text=True, timeout=5)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    return out.stdout.strip() if out.returncode == 0 else "unknown"


def package_versions() -> dict:
    found = {}
    for name in TRACKED_PACKAGES:
        try:
            found[name] = importlib.metadata.version(name)
        except importlib.metadata.PackageNotFoundError:
            found[name] = None
    return found
