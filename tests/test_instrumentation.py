"""Tests for run instrumentation: progress bus fan-out, the event log and
its CSV/MD flush, trace_event timing, and the per-run context.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from instrumentation import (
    EventLog,
    ProgressBus,
    RoundCompleted,
    RoundStarted,
    TickerEnriched,
    trace_event,
)
from run_context import RunContext, make_run_id


# =====================================================================
# PROGRESS BUS
# =====================================================================

class TestProgressBus:
    def test_fan_out_in_subscription_order(self):
        bus = ProgressBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("a", e.round)))
        bus.subscribe(lambda e: seen.append(("b", e.round)))
        bus.publish(RoundStarted(round=1, pending=5))
        assert seen == [("a", 1), ("b", 1)]

    def test_failing_subscriber_does_not_break_others(self):
        bus = ProgressBus()
        seen = []

        def boom(_event):
            raise RuntimeError("subscriber down")

        bus.subscribe(boom)
        bus.subscribe(seen.append)
        bus.publish(RoundStarted(round=2, pending=0))
        assert seen == [RoundStarted(round=2, pending=0)]

    def test_event_equality_and_dict(self):
        e = RoundCompleted(round=1, ok=3, failed=1, pending=1, excluded=0)
        assert e == RoundCompleted(round=1, ok=3, failed=1, pending=1, excluded=0)
        assert e.as_dict()["ok"] == 3


# =====================================================================
# EVENT LOG
# =====================================================================

class TestEventLog:
    def test_sequence_numbers(self):
        log = EventLog()
        log.record("CALC", "one", 5.0, caller="x")
        log.record("CALC", "two", 5.0, caller="x")
        assert [e.seq for e in log.events] == [1, 2]

    def test_progress_rows(self):
        log = EventLog()
        log.on_progress(TickerEnriched(round=1, symbol="AAPL", status="PENDING",
                                       reason="TIMEOUT", elapsed_ms=60000))
        evt = log.events[0]
        assert (evt.event_type, evt.status, evt.caller) == ("PROG", "PENDING", "backfill")
        assert evt.duration_human() == "1.0m"

    def test_flush_all(self, tmp_path):
        log = EventLog()
        log.record("NET", "Universe snapshot", 1500.0, caller="x")
        log.record("IO", "Persist | snapshot", 20.0, status="FAIL", caller="x")
        log.flush_all(tmp_path / "report")
        csv = pd.read_csv(tmp_path / "report" / "run_log_full.csv")
        assert list(csv["Type"]) == ["NET", "IO"]
        md = (tmp_path / "report" / "run_log_full.md").read_text()
        assert "- Non-OK: 1" in md
        assert "Persist \\| snapshot" in md


class TestTraceEvent:
    def test_records_ok(self):
        log = EventLog()
        with trace_event(log, "CALC", "Scoring"):
            pass
        assert log.events[0].status == "OK"
        assert log.events[0].operation == "Scoring"

    def test_failure_recorded_and_reraised(self):
        log = EventLog()
        with pytest.raises(ValueError):
            with trace_event(log, "IO", "Persist"):
                raise ValueError("disk")
        evt = log.events[0]
        assert evt.status == "FAIL"
        assert "ValueError: disk" in evt.details

    def test_none_log_is_noop(self):
        with trace_event(None, "CALC", "anything"):
            value = 1
        assert value == 1


# =====================================================================
# RUN CONTEXT
# =====================================================================

class TestRunContext:
    def test_run_id_in_eastern_time(self):
        now = datetime(2026, 1, 15, 14, 30, 5, tzinfo=timezone.utc)
        assert make_run_id(now) == "20260115_093005"

    def test_run_dir_and_metadata(self, tmp_path):
        ctx = RunContext(run_id="r1", runs_dir=tmp_path)
        try:
            ctx.save_config({"universe": {"top_k": 60}})
            meta_path = ctx.save_metadata({"mode": "PASS"})
        finally:
            ctx.close()
        meta = json.loads(meta_path.read_text())
        assert meta["run_id"] == "r1"
        assert meta["mode"] == "PASS"
        assert (tmp_path / "r1" / "config.yaml").exists()
        assert (tmp_path / "r1" / "run.log").exists()

    def test_structured_log_lines(self, tmp_path):
        ctx = RunContext(run_id="r2", runs_dir=tmp_path)
        try:
            logging.getLogger("backfill").info("Round 1", extra={"round": 1, "phase": "backfill"})
        finally:
            ctx.close()
        lines = [json.loads(line) for line in (tmp_path / "r2" / "run.log").read_text().splitlines()]
        entry = next(e for e in lines if e["msg"] == "Round 1")
        assert entry["round"] == 1
        assert entry["phase"] == "backfill"

    def test_config_hash_ignores_output_sections(self, cfg, tmp_path):
        ctx = RunContext(run_id="r3", runs_dir=tmp_path)
        try:
            other = dict(cfg, output={"excel_file": "elsewhere.xlsx", "write_excel": False})
            assert ctx.config_hash(cfg) == ctx.config_hash(other)
            changed = dict(cfg, selection=dict(cfg["selection"], max_new_entrants=2))
            assert ctx.config_hash(cfg) != ctx.config_hash(changed)
        finally:
            ctx.close()
