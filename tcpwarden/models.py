from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


class TcpState(str, Enum):
    LISTEN       = "LISTEN"
    SYN_SENT     = "SYN_SENT"
    SYN_RECEIVED = "SYN_RCVD"
    ESTABLISHED  = "ESTABLISHED"
    FIN_WAIT_1   = "FIN_WAIT_1"
    FIN_WAIT_2   = "FIN_WAIT_2"
    CLOSE_WAIT   = "CLOSE_WAIT"
    CLOSING      = "CLOSING"
    LAST_ACK     = "LAST_ACK"
    TIME_WAIT    = "TIME_WAIT"
    CLOSED       = "CLOSED"
    UNKNOWN      = "UNKNOWN"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> "TcpState":
        """Map a netstat (Windows/macOS) or psutil status label to a state."""
        return _STATE_ALIASES.get((text or "").strip().upper(), cls.UNKNOWN)


_STATE_ALIASES: Dict[str, TcpState] = {s.value: s for s in TcpState}
_STATE_ALIASES.update({
    "LISTENING":    TcpState.LISTEN,        # Windows netstat
    "SYN_RECEIVED": TcpState.SYN_RECEIVED,  # netstat
    "SYN_RECV":     TcpState.SYN_RECEIVED,  # psutil
    "FIN_WAIT1":    TcpState.FIN_WAIT_1,
    "FIN_WAIT2":    TcpState.FIN_WAIT_2,
    "CLOSE":        TcpState.CLOSED,        # psutil
})


@dataclass(frozen=True)
class Connection:
    local_addr: str
    local_port: int
    remote_addr: str
    remote_port: int
    state: TcpState
    pid: int = 0             # 0 = owner unknown
    process_name: str = ""   # "" = lookup failed


@dataclass(frozen=True)
class ProcessStats:
    pid: int
    process_name: str = ""
    exe_path: Optional[str] = None
    total_connections: int = 0
    established: int = 0
    time_wait: int = 0
    close_wait: int = 0
    listen: int = 0
    other: int = 0
    health_score: int = 100   # 0-100, lower needs attention


@dataclass(frozen=True)
class PortRange:
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class SystemStats:
    total_connections: int = 0
    by_state: Mapping[TcpState, int] = field(default_factory=lambda: MappingProxyType({}))  # read-only
    by_process: Tuple[ProcessStats, ...] = ()
    available_ports: int = 0
    port_usage_percent: float = 0.0


class AnomalyType(str, Enum):
    TOO_MANY_TIME_WAIT   = "too_many_time_wait"
    TOO_MANY_CLOSE_WAIT  = "too_many_close_wait"
    TOO_MANY_CONNECTIONS = "too_many_connections"
    PORT_EXHAUSTION      = "port_exhaustion"
    CONNECTION_LEAK      = "connection_leak"


class Severity(int, Enum):
    INFO     = 0
    WARNING  = 1
    CRITICAL = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Anomaly:
    pid: int
    process_name: str
    anomaly_type: AnomalyType
    severity: Severity
    message: str
    suggestion: str


class ActionType(str, Enum):
    CLOSE_TIME_WAIT   = "close_time_wait"
    CLOSE_CLOSE_WAIT  = "close_close_wait"
    RESET_CONNECTION  = "reset_connection"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"
    NONE              = "none"


@dataclass(frozen=True)
class OptimizationAction:
    pid: int
    process_name: str
    action_type: ActionType
    reason: str
    connections_affected: int = 0
    success: bool = False     # False until executed, True for alert-only records
    error_message: Optional[str] = None
