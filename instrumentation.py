#!/usr/bin/env python3
"""
Instrumentation Layer for the Alpha Selection Engine
=====================================================
Two observational pieces:

  - Typed progress events (RoundStarted, TickerEnriched, RoundCompleted,
    BackfillFinished) published by the backfill orchestrator on a
    ProgressBus.  Subscribers are plain callables.
  - EventLog: in-memory chronological trace of phases (CALC, NET, IO,
    PROG) that flushes to CSV/Markdown at pipeline end.

Usage:
    from instrumentation import EventLog, ProgressBus, trace_event

    log = EventLog()
    bus = ProgressBus()
    bus.subscribe(log.on_progress)
    with trace_event(log, "CALC", "Amplify pool"):
        pool = apply_quality_tiers(items, prev, regime, cfg)

    log.flush_all(ctx.run_dir)
"""

import inspect
import logging
import time
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

logger = logging.getLogger(__name__)

_COLS = ["#", "Time", "Type", "Duration", "Operation", "Caller", "Status", "Details"]


# =========================================================================
# A. Progress events
# =========================================================================

class ProgressEvent:
    """Base for typed progress notifications."""
    __slots__ = ()

    def as_dict(self) -> dict:
        return {k: getattr(self, k) for k in self.__slots__}

    def describe(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.as_dict().items())

    def __eq__(self, other):
        return type(self) is type(other) and self.as_dict() == other.as_dict()

    def __repr__(self):
        return f"{type(self).__name__}({self.describe()})"


class RoundStarted(ProgressEvent):
    __slots__ = ("round", "pending")

    def __init__(self, round: int, pending: int):
        self.round = round
        self.pending = pending


class TickerEnriched(ProgressEvent):
    __slots__ = ("round", "symbol", "status", "reason", "elapsed_ms")

    def __init__(self, round: int, symbol: str, status: str, reason: str,
                 elapsed_ms: float):
        self.round = round
        self.symbol = symbol
        self.status = status
        self.reason = reason
        self.elapsed_ms = elapsed_ms


class RoundCompleted(ProgressEvent):
    __slots__ = ("round", "ok", "failed", "pending", "excluded")

    def __init__(self, round: int, ok: int, failed: int, pending: int, excluded: int):
        self.round = round
        self.ok = ok
        self.failed = failed
        self.pending = pending
        self.excluded = excluded


class BackfillFinished(ProgressEvent):
    __slots__ = ("rounds", "ok", "pending")

    def __init__(self, rounds: int, ok: int, pending: int):
        self.rounds = rounds
        self.ok = ok
        self.pending = pending


class ProgressBus:
    """Fan-out of progress events to subscribers.

    A failing subscriber is logged and skipped; it never breaks the run.
    """

    def __init__(self):
        self._subscribers: list[Callable[[ProgressEvent], None]] = []

    def subscribe(self, fn: Callable[[ProgressEvent], None]):
        self._subscribers.append(fn)
        return fn

    def publish(self, event: ProgressEvent):
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception as exc:
                logger.warning(f"Progress subscriber failed on {event!r}: {exc}")


# =========================================================================
# B. Event log
# =========================================================================

class Event:
    """One traced phase or progress notification."""
    __slots__ = ("seq", "at", "event_type", "duration_ms", "operation",
                 "caller", "status", "details")

    def __init__(self, seq: int, at: datetime, event_type: str, duration_ms: float,
                 operation: str, caller: str, status: str = "OK", details: str = ""):
        self.seq = seq
        self.at = at
        self.event_type = event_type
        self.duration_ms = duration_ms
        self.operation = operation
        self.caller = caller
        self.status = status
        self.details = details

    def duration_human(self) -> str:
        ms = self.duration_ms
        if ms >= 60000:
            return f"{ms / 60000:.1f}m"
        if ms >= 1000:
            return f"{ms / 1000:.1f}s"
        return f"{ms:.0f} ms"

    def row(self) -> list:
        return [self.seq, self.at.strftime("%H:%M:%S"), self.event_type,
                self.duration_human(), self.operation, self.caller,
                self.status, self.details]


class EventLog:
    """Chronological trace of one run, flushed as CSV and Markdown."""

    def __init__(self):
        self.events: list[Event] = []

    def record(self, event_type: str, operation: str, duration_ms: float,
               status: str = "OK", details: str = "",
               caller: Optional[str] = None) -> Event:
        evt = Event(len(self.events) + 1, datetime.now(), event_type,
                    round(duration_ms, 1), operation,
                    caller or _get_caller(skip=2), status, details)
        self.events.append(evt)
        return evt

    def on_progress(self, event: ProgressEvent):
        """ProgressBus subscriber: one PROG row per progress event."""
        status = event.status if isinstance(event, TickerEnriched) else "OK"
        self.record("PROG", type(event).__name__, getattr(event, "elapsed_ms", 0.0) or 0.0,
                    status=status, details=event.describe(), caller="backfill")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([e.row() for e in self.events], columns=_COLS)

    def summary(self) -> dict:
        return {
            "events": len(self.events),
            "traced_seconds": sum(e.duration_ms for e in self.events
                                  if e.event_type != "PROG") / 1000,
            "by_type": dict(sorted(Counter(e.event_type for e in self.events).items())),
            "non_ok": sum(1 for e in self.events if e.status != "OK"),
        }

    def flush_csv(self, path: Path) -> Path:
        self.to_frame().to_csv(path, index=False)
        return path

    def flush_md(self, path: Path) -> Path:
        s = self.summary()
        lines = [
            "# Run Log: Chronological Event Trace",
            "",
            f"Generated: {datetime.now():%Y-%m-%d %H:%M:%S}",
            "",
            "## Summary",
            "",
            f"- Total events: {s['events']}",
            f"- Traced phase time: {s['traced_seconds']:.1f}s",
            f"- Event types: {', '.join(f'{k}={v}' for k, v in s['by_type'].items())}",
            f"- Non-OK: {s['non_ok']}",
            "",
            "## Event Log",
            "",
            "| " + " | ".join(_COLS) + " |",
            "|" + "---|" * len(_COLS),
        ]
        for evt in self.events:
            cells = (str(v).replace("|", "\\|") for v in evt.row())
            lines.append("| " + " | ".join(cells) + " |")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def flush_all(self, report_dir: str | Path):
        out = Path(report_dir)
        out.mkdir(parents=True, exist_ok=True)
        self.flush_csv(out / "run_log_full.csv")
        self.flush_md(out / "run_log_full.md")


# =========================================================================
# C. Phase timing
# =========================================================================

def _get_caller(skip: int = 2) -> str:
    """file:function:line of the frame `skip` levels up."""
    frame = inspect.currentframe()
    for _ in range(skip):
        if frame is None:
            return "unknown"
        frame = frame.f_back
    if frame is None:
        return "unknown"
    return f"{Path(frame.f_code.co_filename).name}:{frame.f_code.co_name}:{frame.f_lineno}"


@contextmanager
def trace_event(log: Optional[EventLog], event_type: str, operation: str,
                details: str = "", caller: Optional[str] = None):
    """Time the enclosed block into `log` (no-op when log is None).

    An exception marks the event FAIL, is appended to details and re-raised.
    """
    if log is None:
        yield
        return
    # trace_event -> contextmanager __enter__ -> caller
    caller = caller or _get_caller(skip=3)
    started = time.monotonic()
    status = "OK"
    try:
        yield
    except Exception as exc:
        status = "FAIL"
        err = f"ERROR: {type(exc).__name__}: {exc}"
        details = f"{details}; {err}" if details else err
        raise
    finally:
        log.record(event_type, operation, (time.monotonic() - started) * 1000,
                   status=status, details=details, caller=caller)
