from types import SimpleNamespace

import psutil
import pytest

from tcpwarden import collectors
from tcpwarden.collectors import (
    ConnectionMonitor, MacNetstatMonitor, ProcessNameCache, PsutilMonitor, WindowsNetstatMonitor,
    parse_macos_netstat, parse_ps_comm, parse_tasklist_csv, parse_windows_netstat, split_addr_port,
)
from tcpwarden.errors import SystemCallError
from tcpwarden.models import Connection, PortRange, TcpState
from tcpwarden.optimizer import OptimizationEngine
from tcpwarden.policy import PolicyStore
from tcpwarden.tcp_config import TcpSystemConfig

WINDOWS_NETSTAT = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:135            0.0.0.0:0              LISTENING       1000
  TCP    192.168.1.5:50123      93.184.216.34:443      ESTABLISHED     4242
  TCP    192.168.1.5:50124      93.184.216.34:443      TIME_WAIT       0
  TCP    [::1]:8080             [::1]:50500            CLOSE_WAIT      4242
  TCP    garbage line
  TCP    1.2.3.4:x              5.6.7.8:80             ESTABLISHED     12
"""

TASKLIST = '''"System Idle Process","0","Services","0","8 K"
"svchost.exe","1000","Services","0","12,345 K"
"curl.exe","4242","Console","1","5,000 K"
'''

MAC_NETSTAT = """Active Internet connections (including servers)
Proto Recv-Q Send-Q  Local Address          Foreign Address        (state)     rhiwat shiwat    pid   epid
tcp4       0      0  192.168.1.5.50123      93.184.216.34.443      ESTABLISHED 131072 131328   4242      0
tcp46      0      0  *.22                   *.*                    LISTEN      131072 131072    321      0
tcp4       0      0  127.0.0.1.5000         127.0.0.1.6000         TIME_WAIT   131072 131072      -      0
tcp4  short line
"""


def test_split_addr_port():
    assert split_addr_port("10.0.0.1:443", ":") == ("10.0.0.1", 443)
    assert split_addr_port("[fe80::1]:80", ":") == ("fe80::1", 80)
    assert split_addr_port("10.0.0.1.443", ".") == ("10.0.0.1", 443)
    assert split_addr_port("*.*", ".") == ("*", 0)
    assert split_addr_port("nocolon", ":") is None
    assert split_addr_port("1.2.3.4:x", ":") is None


def test_parse_windows_netstat_skips_bad_lines():
    conns = parse_windows_netstat(WINDOWS_NETSTAT)
    assert len(conns) == 4
    assert conns[0] == Connection("0.0.0.0", 135, "0.0.0.0", 0, TcpState.LISTEN, 1000, "")
    assert conns[2].pid == 0
    assert conns[3].local_addr == "::1"
    assert conns[3].state is TcpState.CLOSE_WAIT


def test_parse_tasklist_csv():
    assert parse_tasklist_csv(TASKLIST) == {0: "System Idle Process", 1000: "svchost.exe", 4242: "curl.exe"}


def test_parse_macos_netstat():
    conns = parse_macos_netstat(MAC_NETSTAT)
    assert [(c.local_port, c.state, c.pid) for c in conns] == [
        (50123, TcpState.ESTABLISHED, 4242),
        (22, TcpState.LISTEN, 321),
        (5000, TcpState.TIME_WAIT, 0),
    ]


def test_parse_ps_comm():
    assert parse_ps_comm("  1 /sbin/launchd\n4242 /usr/bin/curl\nbad\n") == {1: "launchd", 4242: "curl"}


def test_state_aliases():
    assert TcpState.parse("LISTENING") is TcpState.LISTEN
    assert TcpState.parse("SYN_RECV") is TcpState.SYN_RECEIVED
    assert TcpState.parse("syn_received") is TcpState.SYN_RECEIVED
    assert TcpState.parse("NONE") is TcpState.UNKNOWN
    assert TcpState.parse("") is TcpState.UNKNOWN
    assert str(TcpState.SYN_RECEIVED) == "SYN_RCVD"


# ── name cache ─────────────────────────────
def test_name_cache_fetches_missing_pids_once():
    cache = ProcessNameCache()
    calls = []

    def fetch(pids):
        calls.append(list(pids))
        return {p: f"proc{p}" for p in pids}

    assert cache.resolve([1, 2, 2, 0], fetch) == {1: "proc1", 2: "proc2"}
    assert cache.resolve([1, 2, 3], fetch) == {1: "proc1", 2: "proc2", 3: "proc3"}
    assert calls == [[1, 2], [3]]
    cache.clear()
    assert len(cache) == 0


def test_name_cache_lock_not_held_during_fetch():
    cache = ProcessNameCache()
    seen = {}

    def fetch(pids):
        # would deadlock if resolve held the lock here
        seen["free"] = cache._lock.acquire(blocking=False)
        if seen["free"]:
            cache._lock.release()
        return {}

    cache.resolve([5], fetch)
    assert seen["free"] is True


# ── netstat backends ───────────────────────
def fake_tool(outputs, calls):
    def run(args, timeout=10):
        calls.append(args[0])
        return outputs[args[0]]
    return run


def test_windows_monitor_batches_name_lookup(monkeypatch):
    calls = []
    monkeypatch.setattr(collectors, "run_tool", fake_tool(
        {"netstat": WINDOWS_NETSTAT, "tasklist": TASKLIST}, calls))
    mon = WindowsNetstatMonitor()

    conns = mon.list_all_connections()
    assert calls == ["netstat", "tasklist"]
    names = {c.pid: c.process_name for c in conns}
    assert names == {1000: "svchost.exe", 4242: "curl.exe", 0: ""}

    mon.list_all_connections()
    assert calls == ["netstat", "tasklist", "netstat"]


def test_mac_monitor_resolves_names(monkeypatch):
    calls = []
    monkeypatch.setattr(collectors, "run_tool", fake_tool(
        {"netstat": MAC_NETSTAT, "ps": "4242 /usr/bin/curl\n321 /usr/sbin/sshd\n"}, calls))
    conns = MacNetstatMonitor().list_all_connections()
    assert [c.process_name for c in conns] == ["curl", "sshd", ""]
    assert calls.count("ps") == 1


def test_monitor_name_lookup_failure_is_not_fatal(monkeypatch):
    def run(args, timeout=10):
        if args[0] == "tasklist":
            raise SystemCallError("tasklist missing")
        return WINDOWS_NETSTAT
    monkeypatch.setattr(collectors, "run_tool", run)
    conns = WindowsNetstatMonitor().list_all_connections()
    assert len(conns) == 4
    assert all(c.process_name == "" for c in conns)


def test_run_tool_missing_binary_raises_system_call_error():
    with pytest.raises(SystemCallError):
        collectors.run_tool(["definitely-not-a-real-netstat-binary"])


# ── derived views ──────────────────────────
class StaticMonitor(ConnectionMonitor):
    def __init__(self, conns, config_manager=None):
        super().__init__(config_manager)
        self.conns = conns

    def list_all_connections(self):
        return list(self.conns)

    def _fetch_names(self, pids):
        return {p: "resolved" for p in pids}


def _conns():
    out = [Connection("10.0.0.2", 50000 + i, "10.0.0.1", 443, TcpState.TIME_WAIT, 10, "web")
           for i in range(300)]
    out += [Connection("10.0.0.2", 40000 + i, "10.0.0.1", 443, TcpState.CLOSE_WAIT, 20, "leaky")
            for i in range(60)]
    out += [Connection("0.0.0.0", 22, "", 0, TcpState.LISTEN, 30, "sshd")]
    return out


def test_process_stats_for_pid_without_connections():
    mon = StaticMonitor(_conns())
    ps = mon.process_stats(99999999)
    assert ps.total_connections == 0
    assert ps.health_score == 100
    assert ps.process_name == "resolved"


def test_top_and_problematic_processes():
    mon = StaticMonitor(_conns())
    assert [p.pid for p in mon.top_processes(2)] == [10, 20]
    assert [p.pid for p in mon.problematic_processes(200)] == [10, 20]
    assert [p.pid for p in mon.problematic_processes(400)] == []
    assert [c.pid for c in mon.list_process_connections(30)] == [30]


class FixedConfig:
    def __init__(self, cfg=None, error=None):
        self.cfg, self.error = cfg, error

    def current_config(self):
        if self.error:
            raise self.error
        return self.cfg


def test_port_range_from_config_manager():
    mon = StaticMonitor([], FixedConfig(TcpSystemConfig(dynamic_port_start=10000, max_user_port=10099)))
    assert mon.port_range() == PortRange(10000, 10099)
    assert mon.system_stats().available_ports == 100


def test_port_range_falls_back_on_error():
    mon = StaticMonitor([], FixedConfig(error=SystemCallError("sysctl")))
    assert mon.port_range() == ConnectionMonitor.DEFAULT_PORT_RANGE


# ── psutil backend ─────────────────────────
def _sconn(ip, port, rip, rport, status, pid):
    addr = lambda i, p: SimpleNamespace(ip=i, port=p)
    return SimpleNamespace(laddr=addr(ip, port), raddr=addr(rip, rport) if rip else (),
                           status=status, pid=pid)


def test_psutil_monitor(monkeypatch):
    monkeypatch.setattr(psutil, "net_connections", lambda kind: [
        _sconn("127.0.0.1", 5432, None, None, "LISTEN", 77),
        _sconn("127.0.0.1", 40000, "127.0.0.1", 5432, "TIME_WAIT", None),
        _sconn("127.0.0.1", 40001, "127.0.0.1", 5432, "CLOSE_WAIT", 77),
    ])
    mon = PsutilMonitor()
    monkeypatch.setattr(mon, "_fetch_names", lambda pids: {77: "postgres"})
    conns = mon.list_all_connections()
    assert [(c.state, c.pid, c.process_name) for c in conns] == [
        (TcpState.LISTEN, 77, "postgres"),
        (TcpState.TIME_WAIT, 0, ""),
        (TcpState.CLOSE_WAIT, 77, "postgres"),
    ]
    assert conns[0].remote_addr == "" and conns[0].remote_port == 0


def test_psutil_access_denied_becomes_system_call_error(monkeypatch):
    def deny(kind):
        raise psutil.AccessDenied(pid=None, name=None, msg="needs root")
    monkeypatch.setattr(psutil, "net_connections", deny)
    with pytest.raises(SystemCallError):
        PsutilMonitor().list_all_connections()


def test_ports_must_be_ascii_and_in_range():
    assert split_addr_port("10.0.0.1:²", ":") is None
    assert split_addr_port("10.0.0.1:70000", ":") is None
    assert split_addr_port("10.0.0.1:65535", ":") == ("10.0.0.1", 65535)
    assert parse_windows_netstat("  TCP    10.0.0.1:²    10.0.0.2:80    ESTABLISHED    ³\n") == []


# ── pid reuse ──────────────────────────────
class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_name_cache_expires_entries():
    clock = Clock()
    cache = ProcessNameCache(ttl=30, clock=clock)
    assert cache.resolve([100], lambda pids: {100: "chrome"}) == {100: "chrome"}
    clock.now += 31
    assert cache.resolve([100], lambda pids: {100: "xmrminer"}) == {100: "xmrminer"}


def test_name_cache_keeps_only_requested_pids():
    cache = ProcessNameCache()
    cache.resolve([1], lambda pids: {1: "a", 2: "b", 3: "c"})
    assert len(cache) == 1


def test_reused_pid_gets_new_name_and_policy(monkeypatch):
    netstat = "tcp4  0  0  10.0.0.2.40000  10.0.0.1.80  CLOSE_WAIT  131072  131072  100  0\n" * 60
    ps = {"out": "100 /Applications/chrome\n"}
    monkeypatch.setattr(collectors, "run_tool",
                        lambda args, timeout=10: netstat if args[0] == "netstat" else ps["out"])
    clock = Clock()
    mon = MacNetstatMonitor(name_cache=ProcessNameCache(clock=clock))

    engine = OptimizationEngine(PolicyStore(whitelist=["chrome"]))

    first = mon.system_stats()
    assert first.by_process[0].process_name == "chrome"
    assert engine.decide_all(first) == []

    ps["out"] = "100 /tmp/xmrminer\n"
    clock.now += mon.names.ttl
    second = mon.system_stats()
    assert second.by_process[0].process_name == "xmrminer"
    assert engine.decide_all(second) != []


def test_pids_gone_from_snapshot_are_forgotten(monkeypatch):
    out = {"netstat": MAC_NETSTAT, "ps": "4242 /usr/bin/curl\n321 /usr/sbin/sshd\n"}
    calls = []
    monkeypatch.setattr(collectors, "run_tool", fake_tool(out, calls))
    mon = MacNetstatMonitor()
    mon.list_all_connections()
    assert len(mon.names) == 2

    out["netstat"] = "\n".join(line for line in MAC_NETSTAT.splitlines() if "4242" not in line)
    mon.list_all_connections()
    assert len(mon.names) == 1
    assert calls.count("ps") == 1
