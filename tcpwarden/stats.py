from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional

from .models import Connection, ProcessStats, SystemStats, PortRange, TcpState


# ──────────────────────────────────────────────
# Health score penalties (independent of policy thresholds)
# ──────────────────────────────────────────────
_TIME_WAIT_HIGH      = 100
_TIME_WAIT_SEVERE    = 500
_CLOSE_WAIT_HIGH     = 50
_CLOSE_WAIT_SEVERE   = 200
_CONNECTIONS_HIGH    = 1000
_CONNECTIONS_SEVERE  = 5000

_BUCKETS = {
    TcpState.ESTABLISHED: "established",
    TcpState.TIME_WAIT:   "time_wait",
    TcpState.CLOSE_WAIT:  "close_wait",
    TcpState.LISTEN:      "listen",
}


def calculate_stats(connections: Iterable[Connection]) -> Dict[TcpState, int]:
    stats: Dict[TcpState, int] = defaultdict(int)
    for c in connections:
        stats[c.state] += 1
    return dict(stats)


def group_by_process(connections: Iterable[Connection]) -> Dict[int, List[Connection]]:
    groups: Dict[int, List[Connection]] = defaultdict(list)
    for c in connections:
        groups[c.pid].append(c)
    return dict(groups)


def calculate_health_score(stats: ProcessStats) -> int:
    """
    Base 100, cumulative penalties:
      TIME_WAIT  > 100: -20, > 500: another -30
      CLOSE_WAIT >  50: -25, > 200: another -25
      total      > 1000: -10, > 5000: another -15
    """
    score = 100
    if stats.time_wait > _TIME_WAIT_HIGH:
        score -= 20
    if stats.time_wait > _TIME_WAIT_SEVERE:
        score -= 30

    # CLOSE_WAIT usually means the program forgot to close a socket
    if stats.close_wait > _CLOSE_WAIT_HIGH:
        score -= 25
    if stats.close_wait > _CLOSE_WAIT_SEVERE:
        score -= 25

    if stats.total_connections > _CONNECTIONS_HIGH:
        score -= 10
    if stats.total_connections > _CONNECTIONS_SEVERE:
        score -= 15

    return max(0, min(100, score))


def _empty_counts() -> Dict[str, int]:
    return {"total_connections": 0, "established": 0, "time_wait": 0,
            "close_wait": 0, "listen": 0, "other": 0}


def _count(counts: Dict[str, int], state: TcpState) -> None:
    counts["total_connections"] += 1
    counts[_BUCKETS.get(state, "other")] += 1


def _finish(pid: int, name: str, counts: Dict[str, int],
            exe_path: Optional[str] = None) -> ProcessStats:
    ps = ProcessStats(pid=pid, process_name=name, exe_path=exe_path, **counts)
    return replace(ps, health_score=calculate_health_score(ps))


def process_stats_for(pid: int, connections: Iterable[Connection],
                      process_name: str = "",
                      exe_path: Optional[str] = None) -> ProcessStats:
    """Stats for one pid. Connections owned by other pids are ignored."""
    counts = _empty_counts()
    name = process_name
    for c in connections:
        if c.pid != pid:
            continue
        if not name:
            name = c.process_name
        _count(counts, c.state)
    return _finish(pid, name, counts, exe_path)


def build_system_stats(connections: List[Connection], port_range: PortRange) -> SystemStats:
    by_state: Dict[TcpState, int] = defaultdict(int)
    # dict keeps first-seen pid order; the stable sort below relies on it for ties
    counts_by_pid: Dict[int, Dict[str, int]] = {}
    names: Dict[int, str] = {}

    for c in connections:
        by_state[c.state] += 1
        counts = counts_by_pid.get(c.pid)
        if counts is None:
            counts = counts_by_pid[c.pid] = _empty_counts()
            names[c.pid] = c.process_name
        _count(counts, c.state)

    by_process = [_finish(pid, names[pid], counts) for pid, counts in counts_by_pid.items()]
    by_process.sort(key=lambda p: p.total_connections, reverse=True)

    # Raw connection count, not distinct local ports, so usage can pass 100%.
    total_ports = port_range.size
    used_ports = len(connections)
    usage = (used_ports / total_ports) * 100.0 if total_ports > 0 else 0.0

    return SystemStats(
        total_connections=len(connections),
        by_state=MappingProxyType(dict(by_state)),
        by_process=tuple(by_process),
        available_ports=max(0, total_ports - used_ports),
        port_usage_percent=usage,
    )
