from __future__ import annotations
from typing import List

from .models import Anomaly, AnomalyType, ProcessStats, Severity, SystemStats


# ──────────────────────────────────────────────
# Thresholds used by the rules
# ──────────────────────────────────────────────
TIME_WAIT_WARNING   = 100
TIME_WAIT_CRITICAL  = 500
CLOSE_WAIT_CRITICAL = 50


def detect_anomalies(stats: ProcessStats) -> List[Anomaly]:
    """
    TIME_WAIT axis first (critical above 500, warning above 100), then the
    CLOSE_WAIT axis (critical above 50). TOO_MANY_CONNECTIONS,
    PORT_EXHAUSTION and CONNECTION_LEAK have no rule yet.
    """
    anomalies: List[Anomaly] = []

    # ── TIME_WAIT ─────────────────────────────
    if stats.time_wait > TIME_WAIT_CRITICAL:
        anomalies.append(Anomaly(
            pid=stats.pid, process_name=stats.process_name,
            anomaly_type=AnomalyType.TOO_MANY_TIME_WAIT,
            severity=Severity.CRITICAL,
            message=f"Too many TIME_WAIT connections: {stats.time_wait}",
            suggestion="Lower the TIME_WAIT delay or check whether the program "
                       "opens many short-lived connections; it may have a leak",
        ))
    elif stats.time_wait > TIME_WAIT_WARNING:
        anomalies.append(Anomaly(
            pid=stats.pid, process_name=stats.process_name,
            anomaly_type=AnomalyType.TOO_MANY_TIME_WAIT,
            severity=Severity.WARNING,
            message=f"High TIME_WAIT connection count: {stats.time_wait}",
            suggestion="Reuse connections, consider a connection pool",
        ))

    # ── CLOSE_WAIT ────────────────────────────
    if stats.close_wait > CLOSE_WAIT_CRITICAL:
        anomalies.append(Anomaly(
            pid=stats.pid, process_name=stats.process_name,
            anomaly_type=AnomalyType.TOO_MANY_CLOSE_WAIT,
            severity=Severity.CRITICAL,
            message=f"Too many CLOSE_WAIT connections: {stats.close_wait}, "
                    f"peer closed but the local socket was never closed (possible leak)",
            suggestion="Check that the program closes its sockets; "
                       "restarting the application may be required",
        ))

    return anomalies


def scan(system: SystemStats) -> List[Anomaly]:
    out: List[Anomaly] = []
    for p in system.by_process:
        out.extend(detect_anomalies(p))
    return out
