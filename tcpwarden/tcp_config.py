from __future__ import annotations
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional

from .errors import InvalidParameter, PermissionDenied, SystemCallError, UnsupportedPlatform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TcpSystemConfig:
    """OS-global TCP tunables. None means "leave as is"."""
    max_user_port: Optional[int] = None
    time_wait_delay: Optional[int] = None          # seconds
    dynamic_port_start: Optional[int] = None
    max_syn_retransmissions: Optional[int] = None
    keep_alive_time: Optional[int] = None          # seconds
    keep_alive_interval: Optional[int] = None      # seconds

    @classmethod
    def high_performance(cls) -> "TcpSystemConfig":
        return cls(
            max_user_port=65534,
            time_wait_delay=30,
            dynamic_port_start=10000,
            max_syn_retransmissions=2,
            keep_alive_time=60,
            keep_alive_interval=10,
        )

    @classmethod
    def conservative(cls) -> "TcpSystemConfig":
        return cls(
            max_user_port=49152,
            time_wait_delay=60,
            dynamic_port_start=32768,
            max_syn_retransmissions=3,
            keep_alive_time=7200,
            keep_alive_interval=75,
        )

    def validate(self) -> None:
        if self.max_user_port is not None and not 1024 <= self.max_user_port <= 65535:
            raise InvalidParameter(
                f"max_user_port must be between 1024 and 65535, got {self.max_user_port}")
        if self.time_wait_delay is not None and not 30 <= self.time_wait_delay <= 300:
            raise InvalidParameter(
                f"time_wait_delay should be between 30 and 300 seconds, got {self.time_wait_delay}")
        if (self.dynamic_port_start is not None and self.max_user_port is not None
                and self.dynamic_port_start >= self.max_user_port):
            raise InvalidParameter(
                f"dynamic_port_start ({self.dynamic_port_start}) must be lower than "
                f"max_user_port ({self.max_user_port})")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TcpSystemConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def is_elevated() -> bool:
    if sys.platform.startswith("win"):
        try:
            import ctypes
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


class TcpConfigManager:
    """Reads, validates and writes OS-global TCP parameters."""

    def current_config(self) -> TcpSystemConfig:
        raise NotImplementedError

    def default_config(self) -> TcpSystemConfig:
        raise NotImplementedError

    def requires_reboot(self) -> bool:
        raise NotImplementedError

    def has_admin_privileges(self) -> bool:
        return is_elevated()

    def apply_config(self, cfg: TcpSystemConfig) -> None:
        cfg.validate()
        if not self.has_admin_privileges():
            raise PermissionDenied()
        self._write(cfg)
        logger.info("TCP config applied: %s", {k: v for k, v in cfg.to_dict().items() if v is not None})

    def _write(self, cfg: TcpSystemConfig) -> None:
        raise NotImplementedError


# ──────────────────────────────────────────────
# sysctl (macOS / Linux)
# ──────────────────────────────────────────────
def _sysctl_set(name: str, value: str) -> None:
    try:
        proc = subprocess.run(
            ["sysctl", "-w", f"{name}={value}"],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise SystemCallError(str(e)) from e
    if proc.returncode != 0:
        err = (proc.stderr or proc.stdout).strip()
        if "Permission denied" in err or "Operation not permitted" in err:
            raise PermissionDenied(err)
        raise SystemCallError(err)


class SysctlConfigManager(TcpConfigManager):
    """macOS: net.inet.* keys, changes take effect immediately."""

    def _get(self, name: str) -> Optional[int]:
        try:
            proc = subprocess.run(["sysctl", "-n", name], capture_output=True, text=True, timeout=5)
            return int(proc.stdout.strip())
        except (OSError, subprocess.SubprocessError, ValueError):
            return None

    def current_config(self) -> TcpSystemConfig:
        msl = self._get("net.inet.tcp.msl")   # milliseconds
        keepinit = self._get("net.inet.tcp.keepinit")
        return TcpSystemConfig(
            max_user_port=self._get("net.inet.ip.portrange.last"),
            # TIME_WAIT lasts 2 * MSL
            time_wait_delay=msl * 2 // 1000 if msl is not None else None,
            dynamic_port_start=self._get("net.inet.ip.portrange.first"),
            max_syn_retransmissions=keepinit // 1000 if keepinit is not None else None,
            keep_alive_time=self._get("net.inet.tcp.keepidle"),
            keep_alive_interval=self._get("net.inet.tcp.keepintvl"),
        )

    def _write(self, cfg: TcpSystemConfig) -> None:
        if cfg.max_user_port is not None:
            _sysctl_set("net.inet.ip.portrange.last", str(cfg.max_user_port))
        if cfg.time_wait_delay is not None:
            _sysctl_set("net.inet.tcp.msl", str(cfg.time_wait_delay * 1000 // 2))
        if cfg.dynamic_port_start is not None:
            _sysctl_set("net.inet.ip.portrange.first", str(cfg.dynamic_port_start))
        if cfg.keep_alive_time is not None:
            _sysctl_set("net.inet.tcp.keepidle", str(cfg.keep_alive_time))
        if cfg.keep_alive_interval is not None:
            _sysctl_set("net.inet.tcp.keepintvl", str(cfg.keep_alive_interval))

    def default_config(self) -> TcpSystemConfig:
        return TcpSystemConfig(
            max_user_port=65535,
            time_wait_delay=30,        # MSL 15s
            dynamic_port_start=49152,
            max_syn_retransmissions=3,
            keep_alive_time=7200,
            keep_alive_interval=75,
        )

    def requires_reboot(self) -> bool:
        return False


class LinuxSysctlConfigManager(TcpConfigManager):
    """Linux: reads /proc/sys/net/ipv4, writes with sysctl -w."""

    PROC_ROOT = "/proc/sys/net/ipv4"

    def _read(self, key: str) -> Optional[str]:
        try:
            with open(os.path.join(self.PROC_ROOT, key), "r", encoding="utf-8") as fh:
                return fh.read().strip()
        except OSError:
            return None

    def _read_int(self, key: str) -> Optional[int]:
        raw = self._read(key)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    def current_config(self) -> TcpSystemConfig:
        start = end = None
        port_range = self._read("ip_local_port_range")
        if port_range:
            parts = port_range.split()
            if len(parts) == 2 and all(p.isdigit() for p in parts):
                start, end = int(parts[0]), int(parts[1])
        return TcpSystemConfig(
            max_user_port=end,
            time_wait_delay=self._read_int("tcp_fin_timeout"),
            dynamic_port_start=start,
            max_syn_retransmissions=self._read_int("tcp_syn_retries"),
            keep_alive_time=self._read_int("tcp_keepalive_time"),
            keep_alive_interval=self._read_int("tcp_keepalive_intvl"),
        )

    def _write(self, cfg: TcpSystemConfig) -> None:
        if cfg.max_user_port is not None or cfg.dynamic_port_start is not None:
            cur = self.current_config()
            start = cfg.dynamic_port_start if cfg.dynamic_port_start is not None else cur.dynamic_port_start
            end = cfg.max_user_port if cfg.max_user_port is not None else cur.max_user_port
            if start is None or end is None or start >= end:
                raise InvalidParameter(f"cannot build local port range from {start}-{end}")
            _sysctl_set("net.ipv4.ip_local_port_range", f"{start} {end}")
        if cfg.time_wait_delay is not None:
            _sysctl_set("net.ipv4.tcp_fin_timeout", str(cfg.time_wait_delay))
        if cfg.max_syn_retransmissions is not None:
            _sysctl_set("net.ipv4.tcp_syn_retries", str(cfg.max_syn_retransmissions))
        if cfg.keep_alive_time is not None:
            _sysctl_set("net.ipv4.tcp_keepalive_time", str(cfg.keep_alive_time))
        if cfg.keep_alive_interval is not None:
            _sysctl_set("net.ipv4.tcp_keepalive_intvl", str(cfg.keep_alive_interval))

    def default_config(self) -> TcpSystemConfig:
        return TcpSystemConfig(
            max_user_port=60999,
            time_wait_delay=60,
            dynamic_port_start=32768,
            max_syn_retransmissions=6,
            keep_alive_time=7200,
            keep_alive_interval=75,
        )

    def requires_reboot(self) -> bool:
        return False


# ──────────────────────────────────────────────
# Windows registry
# ──────────────────────────────────────────────
TCP_PARAMS_KEY = r"SYSTEM\CurrentControlSet\Services\Tcpip\Parameters"

_REGISTRY_VALUES = {
    "max_user_port":           "MaxUserPort",
    "time_wait_delay":         "TcpTimedWaitDelay",
    "max_syn_retransmissions": "TcpMaxConnectRetransmissions",
    "keep_alive_time":         "KeepAliveTime",
    "keep_alive_interval":     "KeepAliveInterval",
}


def _winreg():
    try:
        import winreg
    except ImportError as e:
        raise UnsupportedPlatform("Windows registry is not available") from e
    return winreg


class WindowsRegistryConfigManager(TcpConfigManager):
    """Tcpip\\Parameters DWORDs. Most of them only apply after a reboot."""

    def _read_dword(self, name: str) -> Optional[int]:
        winreg = _winreg()
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, TCP_PARAMS_KEY) as key:
                value, _ = winreg.QueryValueEx(key, name)
                return int(value)
        except (OSError, ValueError, TypeError):
            return None

    def current_config(self) -> TcpSystemConfig:
        values = {field: self._read_dword(reg) for field, reg in _REGISTRY_VALUES.items()}
        # the dynamic range lives in netsh, not in the registry
        return TcpSystemConfig(dynamic_port_start=None, **values)

    def _write(self, cfg: TcpSystemConfig) -> None:
        winreg = _winreg()
        try:
            key = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, TCP_PARAMS_KEY, 0, winreg.KEY_SET_VALUE)
        except PermissionError as e:
            raise PermissionDenied(str(e)) from e
        except OSError as e:
            raise SystemCallError(str(e)) from e
        try:
            for field, reg in _REGISTRY_VALUES.items():
                value = getattr(cfg, field)
                if value is None:
                    continue
                try:
                    winreg.SetValueEx(key, reg, 0, winreg.REG_DWORD, int(value))
                except OSError as e:
                    raise SystemCallError(f"failed to write {reg}: {e}") from e
        finally:
            winreg.CloseKey(key)

    def default_config(self) -> TcpSystemConfig:
        return TcpSystemConfig(
            max_user_port=5000,
            time_wait_delay=240,
            dynamic_port_start=1025,
            max_syn_retransmissions=2,
            keep_alive_time=7200000,     # milliseconds in the registry
            keep_alive_interval=1000,
        )

    def has_admin_privileges(self) -> bool:
        return is_elevated()

    def requires_reboot(self) -> bool:
        return True

