from __future__ import annotations
import csv
import io
import logging
import subprocess
import sys
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from .errors import SystemCallError, TcpWardenError
from .models import Connection, PortRange, ProcessStats, SystemStats, TcpState
from .stats import build_system_stats, process_stats_for

logger = logging.getLogger(__name__)

# CREATE_NO_WINDOW, keeps console windows from flashing on Windows
_CREATE_NO_WINDOW = 0x08000000


def _is_windows() -> bool:
    return sys.platform.startswith("win")


def run_tool(args: Sequence[str], timeout: float = 10) -> str:
    """
    Run an external enumeration tool and return its stdout.
    Raises SystemCallError when the tool cannot be started or fails without output.
    """
    try:
        proc = subprocess.run(
            list(args), capture_output=True, text=True, timeout=timeout,
            errors="replace",
            creationflags=_CREATE_NO_WINDOW if _is_windows() else 0,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise SystemCallError(f"{args[0]}: {e}") from e
    if proc.returncode != 0 and not proc.stdout.strip():
        raise SystemCallError(f"{args[0]} exited with {proc.returncode}: {proc.stderr.strip()}")
    return proc.stdout


# ──────────────────────────────────────────────
# pid → process name cache
# ──────────────────────────────────────────────
class ProcessNameCache:
    """
    Shared pid → name map. The lock only covers the dict itself; `fetch`
    (which may spawn a process) always runs outside of it.
    Entries older than `ttl` seconds are fetched again, since pids get reused.
    """
    def __init__(self, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._names: Dict[int, Tuple[str, float]] = {}

    def resolve(self, pids: Iterable[int],
                fetch: Callable[[List[int]], Dict[int, str]]) -> Dict[int, str]:
        wanted = {p for p in pids if p > 0}
        now = self._clock()
        with self._lock:
            found = {
                p: self._names[p][0] for p in wanted
                if p in self._names and now - self._names[p][1] < self.ttl
            }
        missing = sorted(wanted - found.keys())
        if missing:
            # tasklist/ps return every pid; only keep the ones asked for
            fetched = {p: n for p, n in fetch(missing).items() if p in wanted}
            with self._lock:
                self._names.update((p, (n, now)) for p, n in fetched.items())
            found.update(fetched)
        return found

    def retain(self, pids: Iterable[int]) -> None:
        """Forget every pid that is not in `pids` (the current snapshot)."""
        live = set(pids)
        with self._lock:
            for pid in [p for p in self._names if p not in live]:
                del self._names[pid]

    def clear(self) -> None:
        with self._lock:
            self._names.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


def _name_connections(conns: List[Connection], names: Dict[int, str]) -> List[Connection]:
    return [
        Connection(c.local_addr, c.local_port, c.remote_addr, c.remote_port,
                   c.state, c.pid, names.get(c.pid, ""))
        if c.pid > 0 and not c.process_name else c
        for c in conns
    ]


# ──────────────────────────────────────────────
# Monitor base
# ──────────────────────────────────────────────
class ConnectionMonitor:
    """
    One subclass per platform. Subclasses only implement
    `list_all_connections()` and `_fetch_names()`; everything else is derived
    from the snapshot.
    """
    DEFAULT_PORT_RANGE = PortRange(49152, 65535)

    def __init__(self, config_manager=None, name_cache: Optional[ProcessNameCache] = None):
        self.config_manager = config_manager
        self.names = name_cache if name_cache is not None else ProcessNameCache()

    def list_all_connections(self) -> List[Connection]:
        raise NotImplementedError

    def _fetch_names(self, pids: List[int]) -> Dict[int, str]:
        raise NotImplementedError

    def process_name(self, pid: int) -> str:
        return self.names.resolve([pid], self._fetch_names).get(pid, "")

    def _named(self, conns: List[Connection]) -> List[Connection]:
        # one batched lookup per snapshot; pids that left the table are forgotten
        pids = {c.pid for c in conns}
        self.names.retain(pids)
        return _name_connections(conns, self.names.resolve(pids, self._fetch_names))

    # ── derived views ─────────────────────────
    def list_process_connections(self, pid: int) -> List[Connection]:
        return [c for c in self.list_all_connections() if c.pid == pid]

    def process_stats(self, pid: int) -> ProcessStats:
        conns = self.list_process_connections(pid)
        # A pid with no connections is not an error, just an empty row.
        name = conns[0].process_name if conns else self.process_name(pid)
        return process_stats_for(pid, conns, process_name=name, exe_path=_exe_path(pid))

    def system_stats(self) -> SystemStats:
        return build_system_stats(self.list_all_connections(), self.port_range())

    def top_processes(self, n: int) -> List[ProcessStats]:
        return list(self.system_stats().by_process[:n])

    def problematic_processes(self, threshold: int) -> List[ProcessStats]:
        return [
            p for p in self.system_stats().by_process
            if p.time_wait > threshold or p.close_wait > threshold // 4
        ]

    def port_range(self) -> PortRange:
        start, end = self.DEFAULT_PORT_RANGE.start, self.DEFAULT_PORT_RANGE.end
        if self.config_manager is not None:
            try:
                cfg = self.config_manager.current_config()
            except (TcpWardenError, OSError) as e:
                logger.debug("port range lookup failed, using defaults: %s", e)
            else:
                start = cfg.dynamic_port_start or start
                end = cfg.max_user_port or end
        if end < start:
            return self.DEFAULT_PORT_RANGE
        return PortRange(start, end)


def _exe_path(pid: int) -> Optional[str]:
    if pid <= 0:
        return None
    try:
        return psutil.Process(pid).exe() or None
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError):
        return None


# ──────────────────────────────────────────────
# psutil backend (structured kernel API)
# ──────────────────────────────────────────────
def _psutil_names(pids: List[int]) -> Dict[int, str]:
    out: Dict[int, str] = {}
    for pid in pids:
        try:
            out[pid] = psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return out


class PsutilMonitor(ConnectionMonitor):
    DEFAULT_PORT_RANGE = PortRange(32768, 60999)

    def _fetch_names(self, pids: List[int]) -> Dict[int, str]:
        return _psutil_names(pids)

    def list_all_connections(self) -> List[Connection]:
        try:
            raw = psutil.net_connections(kind="tcp")
        except (psutil.AccessDenied, OSError) as e:
            raise SystemCallError(f"net_connections: {e}") from e

        conns: List[Connection] = []
        for c in raw:
            if not c.laddr:
                continue
            try:
                conns.append(Connection(
                    local_addr=c.laddr.ip,
                    local_port=int(c.laddr.port),
                    remote_addr=c.raddr.ip if c.raddr else "",
                    remote_port=int(c.raddr.port) if c.raddr else 0,
                    state=TcpState.parse(c.status),
                    pid=int(c.pid or 0),
                ))
            except (AttributeError, TypeError, ValueError):
                continue

        return self._named(conns)


# ──────────────────────────────────────────────
# netstat text parsers
# ──────────────────────────────────────────────
def _is_number(text: str) -> bool:
    # str.isdigit() alone also accepts digits like "²" that int() rejects
    return text.isascii() and text.isdigit()


def split_addr_port(text: str, sep: str) -> Optional[Tuple[str, int]]:
    """'10.0.0.1:443' / '[::1]:80' (sep ':') or '10.0.0.1.443' / '*.*' (sep '.')."""
    idx = text.rfind(sep)
    if idx <= 0:
        return None
    addr, port = text[:idx], text[idx + 1:]
    if port == "*":
        port = "0"
    if not _is_number(port) or int(port) > 65535:
        return None
    if addr.startswith("[") and addr.endswith("]"):
        addr = addr[1:-1]
    return addr, int(port)


def parse_windows_netstat(output: str) -> List[Connection]:
    """
    `netstat -ano -p tcp` lines:
      TCP    192.168.1.5:50123    93.184.216.34:443    ESTABLISHED    4242
    """
    conns: List[Connection] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or not parts[0].upper().startswith("TCP"):
            continue
        local = split_addr_port(parts[1], ":")
        remote = split_addr_port(parts[2], ":")
        if not local or not remote or not _is_number(parts[4]):
            continue
        conns.append(Connection(
            local_addr=local[0], local_port=local[1],
            remote_addr=remote[0], remote_port=remote[1],
            state=TcpState.parse(parts[3]),
            pid=int(parts[4]),
        ))
    return conns


def parse_tasklist_csv(output: str) -> Dict[int, str]:
    """`tasklist /FO CSV /NH`: "name","pid",... per row."""
    out: Dict[int, str] = {}
    for row in csv.reader(io.StringIO(output)):
        if len(row) < 2:
            continue
        name, pid = row[0].strip(), row[1].strip()
        if _is_number(pid):
            out[int(pid)] = name
    return out


def parse_macos_netstat(output: str) -> List[Connection]:
    """
    `netstat -anv -p tcp` lines (pid in column 9):
      tcp4  0  0  192.168.1.5.50123  93.184.216.34.443  ESTABLISHED  131072  131328  4242  0 ...
    """
    conns: List[Connection] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 9 or not parts[0].startswith("tcp"):
            continue
        local = split_addr_port(parts[3], ".")
        remote = split_addr_port(parts[4], ".")
        if not local or not remote:
            continue
        pid = int(parts[8]) if _is_number(parts[8]) else 0
        conns.append(Connection(
            local_addr=local[0], local_port=local[1],
            remote_addr=remote[0], remote_port=remote[1],
            state=TcpState.parse(parts[5]),
            pid=pid,
        ))
    return conns


def parse_ps_comm(output: str) -> Dict[int, str]:
    """`ps -axo pid=,comm=`: '  123 /usr/sbin/sshd' per row."""
    out: Dict[int, str] = {}
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2 or not _is_number(parts[0]):
            continue
        out[int(parts[0])] = parts[1].rsplit("/", 1)[-1]
    return out


class WindowsNetstatMonitor(ConnectionMonitor):
    DEFAULT_PORT_RANGE = PortRange(1025, 5000)

    def _fetch_names(self, pids: List[int]) -> Dict[int, str]:
        # one tasklist call covers every pid; name lookup failures are not fatal
        try:
            return parse_tasklist_csv(run_tool(["tasklist", "/FO", "CSV", "/NH"]))
        except SystemCallError as e:
            logger.warning("process name lookup failed: %s", e)
            return {}

    def list_all_connections(self) -> List[Connection]:
        conns = parse_windows_netstat(run_tool(["netstat", "-ano", "-p", "tcp"]))
        return self._named(conns)


class MacNetstatMonitor(ConnectionMonitor):
    DEFAULT_PORT_RANGE = PortRange(49152, 65535)

    def _fetch_names(self, pids: List[int]) -> Dict[int, str]:
        try:
            return parse_ps_comm(run_tool(["ps", "-axo", "pid=,comm="]))
        except SystemCallError as e:
            logger.warning("process name lookup failed: %s", e)
            return {}

    def list_all_connections(self) -> List[Connection]:
        conns = parse_macos_netstat(run_tool(["netstat", "-anv", "-p", "tcp"]))
        return self._named(conns)
