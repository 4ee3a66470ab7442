from __future__ import annotations
from PySide6 import QtCore
import logging
import sys
from typing import List

from .backends import create_config_manager, create_controller, create_monitor, has_admin_privileges, platform_name
from .config import AppConfig, load_config, load_policies
from .errors import TcpWardenError
from .models import ActionType, Anomaly, OptimizationAction, Severity, SystemStats, TcpState
from .optimizer import OptimizationEngine
from .workers import StatsPoller

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


class Controller(QtCore.QObject):
    """
    Headless service loop:
    - QTimer fires every refresh_interval_s
    - StatsPoller acquires on a pool thread and posts snapshots back
    - with execute_actions, decisions are carried out on the pool thread too
    - slots only log the summary, anomalies and actions
    """
    def __init__(self, cfg: AppConfig, monitor, engine: OptimizationEngine, controller):
        super().__init__()
        self.cfg = cfg
        self.engine = engine
        self.controller = controller

        self.poller = StatsPoller(monitor, engine, decide=cfg.auto_optimize,
                                  controller=controller if cfg.execute_actions else None)
        self.poller.stats_ready.connect(self.on_stats)
        self.poller.anomalies_ready.connect(self.on_anomalies)
        self.poller.actions_ready.connect(self.on_actions)
        self.poller.poll_failed.connect(self.on_poll_failed)

        self.last_stats: SystemStats = None

        self.timer = QtCore.QTimer(self)
        self.timer.setInterval(max(1, cfg.refresh_interval_s) * 1000)
        self.timer.timeout.connect(self.poller.request)

    def start(self) -> None:
        self.poller.request()
        if self.cfg.auto_refresh:
            self.timer.start()
        logger.info("monitoring started, interval %ss", self.cfg.refresh_interval_s)

    def stop(self) -> None:
        self.timer.stop()

    # ── Signal handlers ───────────────────────
    @QtCore.Slot(object)
    def on_stats(self, stats: SystemStats):
        self.last_stats = stats
        logger.info(
            "total=%d port usage=%.1f%% TIME_WAIT=%d CLOSE_WAIT=%d",
            stats.total_connections, stats.port_usage_percent,
            stats.by_state.get(TcpState.TIME_WAIT, 0),
            stats.by_state.get(TcpState.CLOSE_WAIT, 0),
        )
        for p in stats.by_process[:self.cfg.top_processes]:
            logger.debug("  %-24s pid=%-6d total=%-5d tw=%-5d cw=%-5d health=%d",
                         p.process_name or "?", p.pid, p.total_connections,
                         p.time_wait, p.close_wait, p.health_score)

    @QtCore.Slot(list)
    def on_anomalies(self, anomalies: List[Anomaly]):
        for a in anomalies:
            if a.severity is Severity.CRITICAL:
                logger.error("[%s] %s: %s", a.process_name, a.message, a.suggestion)
            elif a.severity is Severity.WARNING:
                logger.warning("[%s] %s", a.process_name, a.message)
            elif a.severity is Severity.INFO:
                logger.info("[%s] %s", a.process_name, a.message)

    @QtCore.Slot(list)
    def on_actions(self, actions: List[OptimizationAction]):
        for action in actions:
            logger.info("decision: %s (PID %d) %s - %s", action.process_name, action.pid,
                        action.action_type.value, action.reason)
            if action.error_message:
                logger.warning("  not executed: %s", action.error_message)
            elif self.cfg.execute_actions and action.success and action.action_type is not ActionType.NONE:
                logger.info("  closed %d connection(s)", action.connections_affected)

    @QtCore.Slot(str)
    def on_poll_failed(self, message: str):
        logger.error("failed to read connection table: %s", message)


def main():
    cfg = load_config()
    setup_logging(cfg.log_level)

    app = QtCore.QCoreApplication(sys.argv)

    logger.info("tcpwarden starting on %s", platform_name())
    if not has_admin_privileges():
        logger.warning("not running elevated, config changes and connection control are limited")

    config_manager = create_config_manager()
    try:
        tcp_cfg = config_manager.current_config()
        logger.info("current TCP config: %s",
                    {k: v for k, v in tcp_cfg.to_dict().items() if v is not None})
    except TcpWardenError as e:
        logger.warning("cannot read TCP config: %s", e)

    monitor = create_monitor(config_manager)
    engine = OptimizationEngine(load_policies())
    controller = Controller(cfg, monitor, engine, create_controller(monitor))
    controller.start()

    code = app.exec()
    controller.stop()
    sys.exit(code)


if __name__ == "__main__":
    main()
