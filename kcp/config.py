"""Configuration for the control plane components.

Values come from a YAML file (see ``load_config``) and can be overridden by
``KCP_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from kcp.model import Node

logger = logging.getLogger(__name__)


def safe_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


@dataclass
class StateManagerConfig:
    watch_timeout_s: float = 30.0  # re-open the store watch after this much silence
    retry_backoff_s: float = 0.5
    max_backoff_s: float = 10.0
    max_watch_failures: int = 0  # consecutive failures before giving up; 0 = never


@dataclass
class SchedulerConfig:
    max_conflict_retries: int = 3
    policy: str = "least-loaded"


@dataclass
class KubeletConfig:
    resync_interval_s: float = 10.0  # periodic safety-net reconcile
    heartbeat_interval_s: float = 15.0
    eviction_grace_period_s: float = 0.0  # delay before killing a running pod removed from spec
    max_parallel_starts: int = 4
    push_retry_backoff_s: float = 0.5
    push_max_backoff_s: float = 10.0
    host_ip: Optional[str] = None


@dataclass
class MasterConfig:
    schedule_interval_s: float = 5.0  # safety-net scheduling pass
    kubelet_resync_interval_s: float = 30.0
    status_max_retries: int = 5


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class ControlPlaneConfig:
    state: StateManagerConfig = field(default_factory=StateManagerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    kubelet: KubeletConfig = field(default_factory=KubeletConfig)
    master: MasterConfig = field(default_factory=MasterConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"
    store: str = "memory"  # memory | kubernetes
    kubeconfig_path: Optional[str] = None
    auto_workers: bool = True
    nodes: List[Node] = field(default_factory=list)


# env var -> (section, attribute)
ENV_OVERRIDES: Dict[str, tuple] = {
    "KCP_LOG_LEVEL": (None, "log_level"),
    "KCP_STORE": (None, "store"),
    "KCP_KUBECONFIG": (None, "kubeconfig_path"),
    "KCP_AUTO_WORKERS": (None, "auto_workers"),
    "KCP_WATCH_TIMEOUT_S": ("state", "watch_timeout_s"),
    "KCP_SCHEDULER_RETRIES": ("scheduler", "max_conflict_retries"),
    "KCP_EVICTION_GRACE_S": ("kubelet", "eviction_grace_period_s"),
    "KCP_KUBELET_RESYNC_S": ("kubelet", "resync_interval_s"),
    "KCP_SCHEDULE_INTERVAL_S": ("master", "schedule_interval_s"),
    "KCP_API_PORT": ("api", "port"),
}


def _coerce(current: Any, raw: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return safe_int(raw, current)
    if isinstance(current, float):
        return safe_float(raw, current)
    return raw


def _apply_section(target: Any, values: Dict[str, Any], section: str) -> None:
    known = {f.name for f in fields(target)}
    for key, raw in (values or {}).items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{section}.{key}'")
            continue
        setattr(target, key, _coerce(getattr(target, key), raw))


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> ControlPlaneConfig:
    """Build a config from an optional YAML file plus environment overrides."""
    cfg = ControlPlaneConfig()
    environ = os.environ if environ is None else environ

    if path:
        config_path = Path(path)
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        for section in ("state", "scheduler", "kubelet", "master", "api"):
            _apply_section(getattr(cfg, section), data.get(section) or {}, section)
        for key in ("log_level", "store", "kubeconfig_path", "auto_workers"):
            if key in data:
                setattr(cfg, key, _coerce(getattr(cfg, key), data[key]))
        cfg.nodes = [Node.from_dict(item) for item in data.get("nodes") or [] if isinstance(item, dict)]
        logger.info(f"Loaded config from {config_path}: {len(cfg.nodes)} seed node(s)")

    for env_name, (section, attr) in ENV_OVERRIDES.items():
        if env_name not in environ:
            continue
        target = getattr(cfg, section) if section else cfg
        setattr(target, attr, _coerce(getattr(target, attr), environ[env_name]))

    return cfg
