import pytest

from tcpwarden.errors import PermissionDenied, UnsupportedPlatform
from tcpwarden.models import ActionType, Connection, OptimizationAction, ProcessStats, SystemStats, TcpState
from tcpwarden.optimizer import (
    ConnectionController, OptimizationEngine, UnsupportedController, WindowsTcpEntryController, execute,
)
from tcpwarden.policy import AppPolicy, PolicyStore, ThresholdAction


def engine_with(*policies, **kwargs):
    store = PolicyStore(**kwargs)
    for p in policies:
        store.set_policy(p)
    return OptimizationEngine(store)


def test_whitelisted_process_gets_no_actions():
    engine = engine_with(AppPolicy.restricted("chrome.exe"), whitelist=["chrome"])
    stats = ProcessStats(pid=1, process_name="chrome.exe", time_wait=10000, close_wait=10000)
    assert engine.analyze_and_decide(stats) == []


def test_auto_optimize_off_gets_no_actions():
    engine = engine_with(AppPolicy(process_name="db", auto_optimize=False,
                                   time_wait_threshold=1, close_wait_threshold=1))
    assert engine.analyze_and_decide(ProcessStats(pid=1, process_name="db", time_wait=50, close_wait=50)) == []


def test_optimize_emits_close_time_wait_not_yet_executed():
    engine = engine_with(AppPolicy.high_performance("game"))
    actions = engine.analyze_and_decide(ProcessStats(pid=9, process_name="game", time_wait=650))
    assert len(actions) == 1
    a = actions[0]
    assert a.action_type is ActionType.CLOSE_TIME_WAIT
    assert a.connections_affected == 150
    assert a.success is False
    assert a.error_message is None


def test_alert_records_successful_noop():
    engine = engine_with()
    actions = engine.analyze_and_decide(ProcessStats(pid=9, process_name="anything", time_wait=301))
    assert [(a.action_type, a.success, a.connections_affected) for a in actions] == [(ActionType.NONE, True, 0)]


@pytest.mark.parametrize("action", [ThresholdAction.IGNORE, ThresholdAction.RESTART_PROCESS])
def test_ignore_and_restart_fall_through_to_ignore_noop(action):
    engine = engine_with(AppPolicy(process_name="p", threshold_action=action))
    actions = engine.analyze_and_decide(ProcessStats(pid=2, process_name="p", time_wait=400))
    assert len(actions) == 1
    assert actions[0].action_type is ActionType.NONE
    assert actions[0].success is True
    assert "ignore" in actions[0].reason.lower()


@pytest.mark.parametrize("action", list(ThresholdAction))
def test_close_wait_is_actionable_regardless_of_threshold_action(action):
    engine = engine_with(AppPolicy(process_name="p", threshold_action=action,
                                   time_wait_threshold=None, close_wait_threshold=30))
    actions = engine.analyze_and_decide(ProcessStats(pid=3, process_name="p", close_wait=31))
    assert [(a.action_type, a.connections_affected, a.success) for a in actions] == [
        (ActionType.CLOSE_CLOSE_WAIT, 31, False)]


def test_time_wait_and_close_wait_both_reported():
    engine = engine_with(AppPolicy.restricted("x"))
    actions = engine.analyze_and_decide(ProcessStats(pid=3, process_name="x", time_wait=60, close_wait=25))
    assert [a.action_type for a in actions] == [ActionType.CLOSE_TIME_WAIT, ActionType.CLOSE_CLOSE_WAIT]


def test_max_connections_is_not_evaluated():
    engine = engine_with(AppPolicy.restricted("x"))
    stats = ProcessStats(pid=3, process_name="x", total_connections=5000, established=5000)
    assert engine.analyze_and_decide(stats) == []


def test_decide_all():
    engine = engine_with(AppPolicy.restricted("x"))
    system = SystemStats(by_process=(ProcessStats(pid=1, process_name="x", close_wait=21),
                                     ProcessStats(pid=2, process_name="y")))
    assert [a.pid for a in engine.decide_all(system)] == [1]


# ── connection control ─────────────────────
def test_unsupported_controller():
    ctl = UnsupportedController("macOS")
    assert ctl.supports_connection_control() is False
    conn = Connection("127.0.0.1", 5000, "127.0.0.1", 80, TcpState.CLOSE_WAIT, 1, "a")
    with pytest.raises(UnsupportedPlatform):
        ctl.close_connection(conn)
    with pytest.raises(UnsupportedPlatform):
        ctl.close_connections_by_state(1, TcpState.CLOSE_WAIT)
    action = ctl.optimize_process(1, AppPolicy.crawler("a"))
    assert action.action_type is ActionType.GRACEFUL_SHUTDOWN
    assert action.connections_affected == 0


class FakeController(ConnectionController):
    def __init__(self, closed=3, error=None):
        self.closed = closed
        self.error = error
        self.calls = []

    def close_connections_by_state(self, pid, state, connections=None):
        self.calls.append((pid, state))
        if self.error:
            raise self.error
        return self.closed

    def supports_connection_control(self):
        return True


def _action(kind):
    return OptimizationAction(pid=7, process_name="p", action_type=kind, reason="r",
                              connections_affected=10, success=False)


def test_execute_closes_matching_state():
    ctl = FakeController(closed=4)
    done = execute(_action(ActionType.CLOSE_CLOSE_WAIT), ctl)
    assert ctl.calls == [(7, TcpState.CLOSE_WAIT)]
    assert done.success is True
    assert done.connections_affected == 4


def test_execute_reports_failure():
    ctl = FakeController(error=PermissionDenied())
    done = execute(_action(ActionType.CLOSE_TIME_WAIT), ctl)
    assert done.success is False
    assert done.error_message


def test_execute_refuses_without_connection_control():
    done = execute(_action(ActionType.CLOSE_TIME_WAIT), UnsupportedController())
    assert done.success is False
    assert "not supported" in done.error_message


def test_execute_leaves_alerts_alone():
    alert = OptimizationAction(pid=1, process_name="p", action_type=ActionType.NONE,
                               reason="alert", success=True)
    assert execute(alert, FakeController()) is alert


class CountingMonitor:
    def __init__(self, conns):
        self.conns = conns
        self.reads = 0

    def list_process_connections(self, pid):
        self.reads += 1
        return [c for c in self.conns if c.pid == pid]


def _tcp_entry_controller(conns):
    ctl = WindowsTcpEntryController(CountingMonitor(conns))
    ctl.closed = []
    ctl._set_tcp_entry = lambda conn: ctl.closed.append(conn) or 0
    return ctl


def _mixed_conns():
    conns = [Connection("10.0.0.2", 40000 + i, "10.0.0.1", 80, TcpState.CLOSE_WAIT, 7, "p") for i in range(3)]
    conns.append(Connection("10.0.0.2", 41000, "10.0.0.1", 80, TcpState.TIME_WAIT, 7, "p"))
    conns.append(Connection("10.0.0.3", 42000, "10.0.0.1", 80, TcpState.CLOSE_WAIT, 8, "other"))
    return conns


def test_execute_uses_given_snapshot():
    conns = _mixed_conns()
    ctl = _tcp_entry_controller(conns)
    done = [execute(_action(ActionType.CLOSE_CLOSE_WAIT), ctl, conns) for _ in range(5)]
    assert ctl.monitor.reads == 0
    assert all(d.success and d.connections_affected == 3 for d in done)
    assert {c.pid for c in ctl.closed} == {7}


def test_close_by_state_reads_table_without_snapshot():
    ctl = _tcp_entry_controller(_mixed_conns())
    assert ctl.close_connections_by_state(7, TcpState.TIME_WAIT) == 1
    assert ctl.monitor.reads == 1


def test_optimize_process_reads_table_once():
    ctl = _tcp_entry_controller(_mixed_conns())
    policy = AppPolicy(process_name="p", time_wait_threshold=0, close_wait_threshold=1)
    action = ctl.optimize_process(7, policy)
    assert ctl.monitor.reads == 1
    assert action.connections_affected == 4
    assert action.action_type is ActionType.CLOSE_CLOSE_WAIT
