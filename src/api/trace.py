"""
trace.py — Decision traces for the intake pipeline

Every pipeline run builds one Trace: classification reasons, attachment
categories, per-group extraction and escalation decisions. The Trace lives
on the PipelineResult; the pipeline itself never stores it anywhere.
Callers that want a history (the HTTP API, the batch CLI) hand finished
traces to record_trace(), which keeps the last 200 in memory.

Usage:
    from src.api.trace import Trace, record_trace, get_traces

    t = Trace("intake", message_id="m-1", subject="Demande de prix")
    t.step("classified", verdict="REQUEST")
    t.warn("report.pdf unreadable")
    t.ok("2 requests")
    record_trace(t)

Endpoints:
    GET /api/traces                 — recent traces (?status=fail)
    GET /api/traces/<id>            — single trace
    DELETE /api/traces              — clear
"""

import threading
import time
import uuid
import logging
from datetime import datetime
from collections import deque

log = logging.getLogger("trace")

MAX_TRACES = 200


class Trace:
    """Records the journey of a single message through the pipeline."""

    def __init__(self, workflow: str, **context):
        self.id = f"tr_{uuid.uuid4().hex[:8]}"
        self.workflow = workflow
        self.context = context  # message_id, subject, sender
        self.steps = []
        self.status = "running"  # running | ok | fail | warn
        self.started_at = datetime.now().isoformat()
        self.finished_at = None
        self.duration_ms = None
        self._t0 = time.time()

    def step(self, message: str, **data):
        """Record a step."""
        entry = {
            "t": round((time.time() - self._t0) * 1000),  # ms since start
            "msg": message,
        }
        if data:
            entry["data"] = data
        self.steps.append(entry)
        return self

    def ok(self, message: str = "Complete", **data):
        """Mark trace as finished; keeps a warn status."""
        self.step(message, **data)
        if self.status == "running":
            self.status = "ok"
        self._finish()
        return self

    def fail(self, message: str, **data):
        self.step(f"FAIL: {message}", **data)
        self.status = "fail"
        self._finish()
        log.warning("[trace:%s] %s FAILED: %s", self.workflow, self.id, message)
        return self

    def warn(self, message: str, **data):
        """Record a warning (doesn't change status to fail)."""
        self.step(f"WARN: {message}", **data)
        if self.status in ("running", "ok"):
            self.status = "warn"
        return self

    def _finish(self):
        self.finished_at = datetime.now().isoformat()
        self.duration_ms = round((time.time() - self._t0) * 1000)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow": self.workflow,
            "status": self.status,
            "context": self.context,
            "steps": self.steps,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "summary": self._summary(),
        }

    def _summary(self):
        """One-line summary for list views."""
        ctx_parts = []
        for k in ["message_id", "subject", "sender"]:
            if k in self.context:
                ctx_parts.append(f"{k}={self.context[k]}")
        ctx_str = ", ".join(ctx_parts[:3])
        last_msg = self.steps[-1]["msg"] if self.steps else "no steps"
        return f"[{self.status}] [{self.workflow}] {ctx_str} → {last_msg}"


# ═══════════════════════════════════════════════════════════════════════
# History (owned by the caller, not by the pipeline)
# ═══════════════════════════════════════════════════════════════════════

_lock = threading.Lock()
_traces = deque(maxlen=MAX_TRACES)


def record_trace(trace):
    """Store a finished trace (Trace or its to_dict())."""
    entry = trace.to_dict() if isinstance(trace, Trace) else dict(trace)
    with _lock:
        _traces.append(entry)
    return entry


def get_traces(workflow=None, status=None, limit=50):
    """Recent traces, most recent first."""
    with _lock:
        results = list(_traces)
    if workflow:
        results = [t for t in results if t["workflow"] == workflow]
    if status:
        results = [t for t in results if t["status"] == status]
    return list(reversed(results))[:limit]


def get_trace(trace_id: str):
    with _lock:
        for t in _traces:
            if t["id"] == trace_id:
                return t
    return None


def clear_traces():
    with _lock:
        _traces.clear()


def get_summary():
    """Counts by status over the stored traces."""
    with _lock:
        all_traces = list(_traces)
    summary = {"total": len(all_traces), "ok": 0, "warn": 0, "fail": 0, "running": 0}
    for t in all_traces:
        summary[t["status"]] = summary.get(t["status"], 0) + 1
    return summary
