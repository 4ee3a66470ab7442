from __future__ import annotations
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidParameter

POLICY_FORMAT_VERSION = 1


class ThresholdAction(str, Enum):
    ALERT           = "alert"
    OPTIMIZE        = "optimize"
    RESTART_PROCESS = "restart_process"   # dangerous, needs confirmation
    IGNORE          = "ignore"


@dataclass(frozen=True)
class AppPolicy:
    process_name: str = ""
    exe_path: Optional[str] = None
    auto_optimize: bool = True
    # TIME_WAIT is a normal closing state and expires by itself, keep it loose.
    time_wait_threshold: Optional[int] = 300
    # CLOSE_WAIT never goes away on its own, handle it aggressively.
    close_wait_threshold: Optional[int] = 30
    max_connections: Optional[int] = None
    threshold_action: ThresholdAction = ThresholdAction.ALERT
    priority: int = 100          # lower = more important
    note: str = ""

    # ── presets ───────────────────────────────
    @classmethod
    def default(cls, process_name: str = "") -> "AppPolicy":
        return cls(process_name=process_name)

    @classmethod
    def high_performance(cls, process_name: str) -> "AppPolicy":
        """Games, downloaders: lenient on TIME_WAIT, strict on CLOSE_WAIT."""
        return cls(
            process_name=process_name,
            time_wait_threshold=500,
            close_wait_threshold=50,
            threshold_action=ThresholdAction.OPTIMIZE,
            priority=10,
        )

    @classmethod
    def server(cls, process_name: str) -> "AppPolicy":
        """Web servers, databases."""
        return cls(
            process_name=process_name,
            time_wait_threshold=1000,
            close_wait_threshold=100,
            max_connections=10000,
            threshold_action=ThresholdAction.ALERT,
            priority=5,
        )

    @classmethod
    def restricted(cls, process_name: str) -> "AppPolicy":
        """Suspicious programs."""
        return cls(
            process_name=process_name,
            time_wait_threshold=50,
            close_wait_threshold=20,
            max_connections=100,
            threshold_action=ThresholdAction.OPTIMIZE,
            priority=1,
        )

    @classmethod
    def crawler(cls, process_name: str) -> "AppPolicy":
        """Scrapers: lots of short connections, stuck CLOSE_WAIT hangs them."""
        return cls(
            process_name=process_name,
            time_wait_threshold=500,
            close_wait_threshold=20,
            max_connections=None,
            threshold_action=ThresholdAction.OPTIMIZE,
            priority=5,
            note="Crawler preset: clear CLOSE_WAIT aggressively",
        )

    # ── serialization ─────────────────────────
    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["threshold_action"] = self.threshold_action.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppPolicy":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "threshold_action" in kwargs:
            kwargs["threshold_action"] = _parse_action(kwargs["threshold_action"])
        return cls(**kwargs)


def _parse_action(raw: Any) -> ThresholdAction:
    # accepts "restart_process" as well as "RestartProcess"
    if isinstance(raw, ThresholdAction):
        return raw
    wanted = str(raw).replace("_", "").lower()
    for action in ThresholdAction:
        if action.value.replace("_", "") == wanted:
            return action
    return ThresholdAction.ALERT


class PolicyStore:
    """
    Per-process policies keyed by process name, a default policy, and
    whitelist/blacklist substrings. Not thread-safe: mutate it from the thread
    that owns it.
    """
    def __init__(self, default_policy: Optional[AppPolicy] = None,
                 whitelist: Optional[List[str]] = None,
                 blacklist: Optional[List[str]] = None):
        self._policies: Dict[str, AppPolicy] = {}
        self._default = default_policy or AppPolicy.default()
        self.whitelist: List[str] = list(whitelist or [])
        self.blacklist: List[str] = list(blacklist or [])

    @property
    def default_policy(self) -> AppPolicy:
        return self._default

    @default_policy.setter
    def default_policy(self, policy: AppPolicy) -> None:
        if policy is None:
            raise InvalidParameter("default_policy cannot be empty")
        self._default = policy

    def set_policy(self, policy: AppPolicy) -> None:
        self._policies[policy.process_name] = policy

    def get_policy(self, process_name: str) -> AppPolicy:
        return self._policies.get(process_name, self._default)

    def remove_policy(self, process_name: str) -> Optional[AppPolicy]:
        return self._policies.pop(process_name, None)

    def all_policies(self) -> List[AppPolicy]:
        return list(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, process_name: str) -> bool:
        return process_name in self._policies

    # Unanchored, case-sensitive substring match.
    def is_whitelisted(self, process_name: str) -> bool:
        return any(w in process_name for w in self.whitelist)

    def is_blacklisted(self, process_name: str) -> bool:
        return any(b in process_name for b in self.blacklist)

    # ── serialization ─────────────────────────
    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": POLICY_FORMAT_VERSION,
            "policies": [p.to_dict() for p in self._policies.values()],
            "default_policy": self._default.to_dict(),
            "whitelist": list(self.whitelist),
            "blacklist": list(self.blacklist),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyStore":
        default = data.get("default_policy")
        store = cls(
            default_policy=AppPolicy.from_dict(default) if default else None,
            whitelist=data.get("whitelist") or [],
            blacklist=data.get("blacklist") or [],
        )
        raw = data.get("policies") or []
        if isinstance(raw, dict):
            # older mapping form: {name: policy}
            raw = [dict(v, process_name=v.get("process_name") or k) for k, v in raw.items()]
        for item in raw:
            store.set_policy(AppPolicy.from_dict(item))
        return store
