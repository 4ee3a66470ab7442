from __future__ import annotations


class TcpWardenError(Exception):
    """Base class for everything acquisition, control and config can raise."""


class PermissionDenied(TcpWardenError):
    def __init__(self, detail: str = "administrator/root privileges required"):
        super().__init__(detail)
        self.detail = detail


class UnsupportedPlatform(TcpWardenError):
    def __init__(self, detail: str):
        super().__init__(f"operation not supported on this platform: {detail}")
        self.detail = detail


class InvalidParameter(TcpWardenError):
    def __init__(self, detail: str):
        super().__init__(f"invalid parameter: {detail}")
        self.detail = detail


class SystemCallError(TcpWardenError):
    """Native API or subprocess failure. `detail` holds the native text."""
    def __init__(self, detail: str):
        super().__init__(f"system call failed: {detail}")
        self.detail = detail


class ProcessNotFound(TcpWardenError):
    # Reserved. Pids with no connections get a zero-valued ProcessStats instead.
    def __init__(self, pid: int):
        super().__init__(f"process not found: PID {pid}")
        self.pid = pid


class PersistenceError(TcpWardenError):
    def __init__(self, detail: str):
        super().__init__(f"I/O error: {detail}")
        self.detail = detail
