from __future__ import annotations
import ipaddress
import logging
import sys
from dataclasses import replace
from typing import Iterable, List, Optional

from .errors import PermissionDenied, SystemCallError, TcpWardenError, UnsupportedPlatform
from .models import ActionType, Connection, OptimizationAction, ProcessStats, SystemStats, TcpState
from .policy import AppPolicy, PolicyStore, ThresholdAction
from .stats import process_stats_for

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════
# Decision engine (pure, no I/O)
# ══════════════════════════════════════════
class OptimizationEngine:
    def __init__(self, policy_store: Optional[PolicyStore] = None):
        self.policy_store = policy_store or PolicyStore()

    def analyze_and_decide(self, stats: ProcessStats) -> List[OptimizationAction]:
        actions: List[OptimizationAction] = []

        # whitelisted processes are never touched, not even alerted on
        if self.policy_store.is_whitelisted(stats.process_name):
            return actions

        policy = self.policy_store.get_policy(stats.process_name)
        if not policy.auto_optimize:
            return actions

        # max_connections is carried by the policy but not evaluated here.

        threshold = policy.time_wait_threshold
        if threshold is not None and stats.time_wait > threshold:
            actions.append(self._time_wait_action(stats, policy, threshold))

        # CLOSE_WAIT is always actionable, whatever threshold_action says
        threshold = policy.close_wait_threshold
        if threshold is not None and stats.close_wait > threshold:
            actions.append(OptimizationAction(
                pid=stats.pid,
                process_name=stats.process_name,
                action_type=ActionType.CLOSE_CLOSE_WAIT,
                reason=f"CLOSE_WAIT({stats.close_wait}) exceeds threshold({threshold}), "
                       f"possible connection leak",
                connections_affected=stats.close_wait,
                success=False,
            ))

        return actions

    def decide_all(self, system: SystemStats) -> List[OptimizationAction]:
        out: List[OptimizationAction] = []
        for p in system.by_process:
            out.extend(self.analyze_and_decide(p))
        return out

    @staticmethod
    def _time_wait_action(stats: ProcessStats, policy: AppPolicy, threshold: int) -> OptimizationAction:
        action = policy.threshold_action
        if action is ThresholdAction.OPTIMIZE:
            return OptimizationAction(
                pid=stats.pid,
                process_name=stats.process_name,
                action_type=ActionType.CLOSE_TIME_WAIT,
                reason=f"TIME_WAIT({stats.time_wait}) exceeds threshold({threshold})",
                connections_affected=stats.time_wait - threshold,
                success=False,
            )
        if action is ThresholdAction.ALERT:
            return OptimizationAction(
                pid=stats.pid,
                process_name=stats.process_name,
                action_type=ActionType.NONE,
                reason=f"Alert: TIME_WAIT({stats.time_wait}) exceeds threshold({threshold})",
                connections_affected=0,
                success=True,
            )
        if action in (ThresholdAction.IGNORE, ThresholdAction.RESTART_PROCESS):
            # RESTART_PROCESS has no branch of its own yet
            return _ignored(stats)
        raise AssertionError(f"unhandled threshold action: {action!r}")


def _ignored(stats: ProcessStats) -> OptimizationAction:
    return OptimizationAction(
        pid=stats.pid,
        process_name=stats.process_name,
        action_type=ActionType.NONE,
        reason="Policy set to ignore",
        connections_affected=0,
        success=True,
    )


# ══════════════════════════════════════════
# Connection control (platform executors)
# ══════════════════════════════════════════
class ConnectionController:
    """
    Executes actions against live connections. Callers must check
    `supports_connection_control()` before trusting `success`.
    """

    def close_connection(self, conn: Connection) -> bool:
        raise NotImplementedError

    def close_connections_by_state(self, pid: int, state: TcpState,
                                   connections: Optional[Iterable[Connection]] = None) -> int:
        """
        Close every connection of `pid` in `state`. `connections` is a snapshot
        taken by the caller; without one the controller reads the table itself.
        """
        raise NotImplementedError

    def optimize_process(self, pid: int, policy: AppPolicy) -> OptimizationAction:
        raise NotImplementedError

    def supports_connection_control(self) -> bool:
        raise NotImplementedError


class UnsupportedController(ConnectionController):
    """
    For kernels without single-connection teardown (macOS, Linux without
    privileged tooling). Only advisory actions are returned.
    """
    def __init__(self, platform: str = sys.platform):
        self.platform = platform

    def close_connection(self, conn: Connection) -> bool:
        raise UnsupportedPlatform(
            f"{self.platform} cannot close another process's TCP connection; "
            f"the process has to be signalled instead")

    def close_connections_by_state(self, pid: int, state: TcpState,
                                   connections: Optional[Iterable[Connection]] = None) -> int:
        raise UnsupportedPlatform(f"{self.platform} cannot close TCP connections directly")

    def optimize_process(self, pid: int, policy: AppPolicy) -> OptimizationAction:
        return OptimizationAction(
            pid=pid,
            process_name=policy.process_name,
            action_type=ActionType.GRACEFUL_SHUTDOWN,
            reason=f"{self.platform} only supports asking the process to clean up its connections",
            connections_affected=0,
            success=True,
        )

    def supports_connection_control(self) -> bool:
        return False


# MIB_TCP_STATE_DELETE_TCB
_DELETE_TCB = 12
_ERROR_ACCESS_DENIED = 5


def _ipv4_dword(addr: str) -> int:
    ip = ipaddress.ip_address(addr or "0.0.0.0")
    if ip.version != 4:
        raise UnsupportedPlatform("SetTcpEntry only handles IPv4 connections")
    # MIB_TCPROW wants network byte order in a little-endian DWORD
    return int.from_bytes(ip.packed, "little")


def _port_dword(port: int) -> int:
    return ((port & 0xFF) << 8) | ((port >> 8) & 0xFF)


class WindowsTcpEntryController(ConnectionController):
    """Tears connections down through iphlpapi!SetTcpEntry (needs elevation)."""

    def __init__(self, monitor):
        self.monitor = monitor

    def _set_tcp_entry(self, conn: Connection) -> int:
        import ctypes
        from ctypes import wintypes

        class MIB_TCPROW(ctypes.Structure):
            _fields_ = [
                ("dwState", wintypes.DWORD),
                ("dwLocalAddr", wintypes.DWORD),
                ("dwLocalPort", wintypes.DWORD),
                ("dwRemoteAddr", wintypes.DWORD),
                ("dwRemotePort", wintypes.DWORD),
            ]

        row = MIB_TCPROW(
            _DELETE_TCB,
            _ipv4_dword(conn.local_addr), _port_dword(conn.local_port),
            _ipv4_dword(conn.remote_addr), _port_dword(conn.remote_port),
        )
        try:
            iphlpapi = ctypes.WinDLL("iphlpapi.dll")
        except (AttributeError, OSError) as e:
            raise SystemCallError(f"failed to load iphlpapi.dll: {e}") from e
        return int(iphlpapi.SetTcpEntry(ctypes.byref(row)))

    def close_connection(self, conn: Connection) -> bool:
        code = self._set_tcp_entry(conn)
        if code == _ERROR_ACCESS_DENIED:
            raise PermissionDenied("SetTcpEntry requires administrator privileges")
        if code != 0:
            raise SystemCallError(f"SetTcpEntry failed with error code {code}")
        return True

    def close_connections_by_state(self, pid: int, state: TcpState,
                                   connections: Optional[Iterable[Connection]] = None) -> int:
        if connections is None:
            connections = self.monitor.list_process_connections(pid)
        closed = 0
        for conn in connections:
            if conn.pid != pid or conn.state is not state:
                continue
            try:
                if self.close_connection(conn):
                    closed += 1
            except PermissionDenied:
                raise
            except TcpWardenError as e:
                logger.debug("close %s:%d failed: %s", conn.local_addr, conn.local_port, e)
        return closed

    def optimize_process(self, pid: int, policy: AppPolicy) -> OptimizationAction:
        conns = self.monitor.list_process_connections(pid)
        stats = process_stats_for(pid, conns, process_name=conns[0].process_name if conns else "")
        affected = 0
        reasons: List[str] = []
        action_type = ActionType.NONE

        if policy.time_wait_threshold is not None and stats.time_wait > policy.time_wait_threshold:
            reasons.append(f"TIME_WAIT({stats.time_wait}) exceeds threshold({policy.time_wait_threshold})")
            affected += self.close_connections_by_state(pid, TcpState.TIME_WAIT, conns)
            action_type = ActionType.CLOSE_TIME_WAIT

        if policy.close_wait_threshold is not None and stats.close_wait > policy.close_wait_threshold:
            reasons.append(f"CLOSE_WAIT({stats.close_wait}) exceeds threshold({policy.close_wait_threshold})")
            affected += self.close_connections_by_state(pid, TcpState.CLOSE_WAIT, conns)
            action_type = ActionType.CLOSE_CLOSE_WAIT

        return OptimizationAction(
            pid=pid,
            process_name=stats.process_name or policy.process_name,
            action_type=action_type,
            reason="; ".join(reasons) or "Connection states normal, nothing to do",
            connections_affected=affected,
            success=True,
        )

    def supports_connection_control(self) -> bool:
        return True


_STATE_FOR_ACTION = {
    ActionType.CLOSE_TIME_WAIT:  TcpState.TIME_WAIT,
    ActionType.CLOSE_CLOSE_WAIT: TcpState.CLOSE_WAIT,
}


def execute(action: OptimizationAction, controller: ConnectionController,
            connections: Optional[Iterable[Connection]] = None) -> OptimizationAction:
    """
    Carry out a decided action. Returns a copy with `success` and
    `error_message` reflecting what actually happened.
    Pass the snapshot the action was decided on as `connections` so the
    connection table is not read again.
    """
    if action.action_type is ActionType.NONE:
        return action
    if not controller.supports_connection_control():
        return replace(action, success=False,
                       error_message="connection control is not supported on this platform")

    state = _STATE_FOR_ACTION.get(action.action_type)
    if state is None:
        # RESET_CONNECTION / GRACEFUL_SHUTDOWN are never decided by the engine
        return replace(action, success=False,
                       error_message=f"{action.action_type.value} cannot be executed automatically")
    try:
        closed = controller.close_connections_by_state(action.pid, state, connections)
    except TcpWardenError as e:
        logger.warning("action %s for %s (PID %d) failed: %s",
                       action.action_type.value, action.process_name, action.pid, e)
        return replace(action, success=False, error_message=str(e))
    return replace(action, success=True, connections_affected=closed)
