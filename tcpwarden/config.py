from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Union
import json
import logging

from .errors import PersistenceError
from .policy import PolicyStore

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".tcpwarden"
CFG_PATH = APP_DIR / "config.json"
POLICIES_PATH = APP_DIR / "policies.json"

CONFIG_VERSION = 1


@dataclass
class AppConfig:
    refresh_interval_s: int = 5
    auto_refresh: bool = True

    # Decisions
    auto_optimize: bool = False      # False → report anomalies only, no decisions
    execute_actions: bool = False    # hand decided actions to the controller
    top_processes: int = 20

    log_level: str = "INFO"
    version: int = CONFIG_VERSION


def load_config(path: Path = None) -> AppConfig:
    path = path or CFG_PATH
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        return AppConfig(**known)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("config %s unreadable (%s), recreating defaults", path, e)
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg


def save_config(cfg: AppConfig, path: Path = None) -> None:
    path = path or CFG_PATH
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(cfg.__dict__, indent=2), encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}") from e


# ──────────────────────────────────────────────
# Policies
# ──────────────────────────────────────────────
def export_policies(store: PolicyStore, path: Union[str, Path]) -> None:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(store.to_dict(), indent=2), encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}") from e


def import_policies(path: Union[str, Path]) -> PolicyStore:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise PersistenceError(f"cannot read {path}: {e}") from e
    except ValueError as e:
        raise PersistenceError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PersistenceError(f"{path} does not contain a policy store")
    try:
        return PolicyStore.from_dict(data)
    except (TypeError, AttributeError) as e:
        raise PersistenceError(f"{path} has malformed policies: {e}") from e


def load_policies(path: Path = None) -> PolicyStore:
    """Saved policies, or a fresh store with only the default policy."""
    path = path or POLICIES_PATH
    if not path.exists():
        return PolicyStore()
    return import_policies(path)


def save_policies(store: PolicyStore, path: Path = None) -> None:
    export_policies(store, path or POLICIES_PATH)
