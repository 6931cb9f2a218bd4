"""
Metrics collection for the Agent Session Broker.
"""
from typing import Dict, Any
from collections import defaultdict
from datetime import datetime, timezone

# In-memory metrics store, process lifetime only
_metrics: Dict[str, Any] = {
    "requests": defaultdict(int),
    "errors": defaultdict(int),
    "sessions": defaultdict(int),
    "automation_runs": defaultdict(int),
    "response_times": [],
    "run_times": [],
    "start_time": datetime.now(timezone.utc).isoformat(),
}


def record_request(method: str, path: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    _metrics["requests"][f"{method} {path}"] += 1
    _metrics["requests"][f"status_{status_code}"] += 1

    # Keep last 1000 response times
    _metrics["response_times"].append(duration_ms)
    if len(_metrics["response_times"]) > 1000:
        _metrics["response_times"] = _metrics["response_times"][-1000:]


def record_error(error_type: str, path: str = ""):
    """Record error metrics."""
    _metrics["errors"][error_type] += 1
    if path:
        _metrics["errors"][f"{error_type}:{path}"] += 1


def record_session_transition(transition: str):
    """Record a session lifecycle transition (created, allowed, denied, cancelled, removed)."""
    _metrics["sessions"][transition] += 1


def record_automation_run(outcome: str, duration_ms: float):
    """Record an automation run by its final event type."""
    _metrics["automation_runs"][outcome] += 1
    _metrics["run_times"].append(duration_ms)
    if len(_metrics["run_times"]) > 1000:
        _metrics["run_times"] = _metrics["run_times"][-1000:]


def get_metrics() -> Dict[str, Any]:
    """Get current metrics."""
    response_times = _metrics["response_times"]
    avg_response_time = sum(response_times) / len(response_times) if response_times else 0
    p95_response_time = sorted(response_times)[int(len(response_times) * 0.95)] if len(response_times) >= 20 else 0
    run_times = _metrics["run_times"]
    avg_run_time = sum(run_times) / len(run_times) if run_times else 0

    total_requests = sum(v for k, v in _metrics["requests"].items() if not k.startswith("status_"))
    total_errors = sum(_metrics["errors"].values())

    uptime_seconds = (datetime.now(timezone.utc) - datetime.fromisoformat(_metrics["start_time"])).total_seconds()

    return {
        "uptime_seconds": int(uptime_seconds),
        "requests": {
            "total": total_requests,
            "by_endpoint": {k: v for k, v in _metrics["requests"].items() if not k.startswith("status_")},
            "by_status": {k: v for k, v in _metrics["requests"].items() if k.startswith("status_")},
        },
        "errors": {
            "total": total_errors,
            "by_type": dict(_metrics["errors"]),
        },
        "sessions": dict(_metrics["sessions"]),
        "automation_runs": {
            "total": sum(_metrics["automation_runs"].values()),
            "by_outcome": dict(_metrics["automation_runs"]),
            "avg_duration_ms": round(avg_run_time, 2),
        },
        "performance": {
            "avg_response_time_ms": round(avg_response_time, 2),
            "p95_response_time_ms": round(p95_response_time, 2),
        },
    }


def reset_metrics():
    """Reset all metrics (for testing)."""
    global _metrics
    _metrics = {
        "requests": defaultdict(int),
        "errors": defaultdict(int),
        "sessions": defaultdict(int),
        "automation_runs": defaultdict(int),
        "response_times": [],
    "run_times": [],
        "start_time": datetime.now(timezone.utc).isoformat(),
    }
