from __future__ import annotations
import sys

from .collectors import ConnectionMonitor, MacNetstatMonitor, PsutilMonitor, WindowsNetstatMonitor
from .optimizer import ConnectionController, UnsupportedController, WindowsTcpEntryController
from .tcp_config import (
    LinuxSysctlConfigManager, SysctlConfigManager, TcpConfigManager,
    WindowsRegistryConfigManager, is_elevated,
)


def _platform_key() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def platform_name() -> str:
    return {"windows": "Windows", "macos": "macOS", "linux": "Linux"}[_platform_key()]


def create_config_manager() -> TcpConfigManager:
    key = _platform_key()
    if key == "windows":
        return WindowsRegistryConfigManager()
    if key == "macos":
        return SysctlConfigManager()
    return LinuxSysctlConfigManager()


def create_monitor(config_manager: TcpConfigManager = None) -> ConnectionMonitor:
    key = _platform_key()
    cfg = config_manager or create_config_manager()
    if key == "windows":
        return WindowsNetstatMonitor(cfg)
    if key == "macos":
        return MacNetstatMonitor(cfg)
    return PsutilMonitor(cfg)


def create_controller(monitor: ConnectionMonitor) -> ConnectionController:
    if _platform_key() == "windows":
        return WindowsTcpEntryController(monitor)
    return UnsupportedController(platform_name())


def has_admin_privileges() -> bool:
    return is_elevated()
