from __future__ import annotations

import math
import re
from pathlib import Path
from typing import Any, cast

import yaml

from foren.config.schema import (
    PLACEMENT_VALUES,
    STEP_NAMES,
    DebugSettings,
    Placement,
    TaskPolicy,
)
from foren.exec.retry import BackoffSchedule
from foren.util.errors import ConfigError

_DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_LABEL_MAX_LEN = 63
_ALLOWED_ROOT_KEYS = {
    "namespace",
    "image",
    "container_name",
    "name_prefix",
    "placement",
    "term",
    "host_paths",
    "sleep_seconds",
    "wait_poll_interval_sec",
    "wait_timeout_sec",
    "backoff",
    "tasks",
    "kubeconfig",
    "context",
}
_ALLOWED_BACKOFF_KEYS = {"max_attempts", "base_delay_sec", "multiplier"}
_ALLOWED_POLICY_KEYS = {"max_attempts", "timeout_sec"}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_dns_label(value: object) -> bool:
    return (
        isinstance(value, str)
        and len(value) <= _DNS_LABEL_MAX_LEN
        and _DNS_LABEL_PATTERN.fullmatch(value) is not None
    )


def _positive_float(name: str, value: object) -> float:
    if not _is_finite_real_number(value) or cast(float, value) <= 0:
        raise ConfigError(f"{name} must be > 0")
    return float(cast(float, value))


def _ensure_mapping(name: str, value: object, allowed: set[str]) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    if any(not isinstance(key, str) for key in value):
        raise ConfigError(f"{name} keys must be strings")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"{name} has unknown fields: {sorted(unknown)}")
    return value


def _parse_backoff(raw: object, default: BackoffSchedule) -> BackoffSchedule:
    data = _ensure_mapping("backoff", raw, _ALLOWED_BACKOFF_KEYS)
    max_attempts = data.get("max_attempts", default.max_attempts)
    if not _is_positive_int(max_attempts):
        raise ConfigError("backoff.max_attempts must be int >= 1")
    base_delay = data.get("base_delay_sec", default.base_delay)
    if not _is_finite_real_number(base_delay) or base_delay < 0:
        raise ConfigError("backoff.base_delay_sec must be >= 0")
    multiplier = data.get("multiplier", default.multiplier)
    if not _is_finite_real_number(multiplier) or multiplier <= 1.0:
        raise ConfigError("backoff.multiplier must be > 1.0")
    return BackoffSchedule(
        max_attempts=max_attempts,
        base_delay=float(base_delay),
        multiplier=float(multiplier),
    )


def _parse_policy(step: str, raw: object, default: TaskPolicy) -> TaskPolicy:
    data = _ensure_mapping(f"tasks.{step}", raw, _ALLOWED_POLICY_KEYS)
    max_attempts = data.get("max_attempts", default.max_attempts)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 0:
        raise ConfigError(f"tasks.{step}.max_attempts must be int >= 0")
    timeout_sec = data.get("timeout_sec", default.timeout_sec)
    if not _is_finite_real_number(timeout_sec) or timeout_sec < 0:
        raise ConfigError(f"tasks.{step}.timeout_sec must be >= 0")
    return TaskPolicy(max_attempts=max_attempts, timeout_sec=float(timeout_sec))


def _parse_host_paths(raw: object) -> dict[str, str]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigError("host_paths must be a non-empty mapping")
    host_paths: dict[str, str] = {}
    for host_path, container_path in raw.items():
        if not _is_non_blank_str(host_path) or not _is_non_blank_str(container_path):
            raise ConfigError("host_paths must be dict[str, str]")
        if not host_path.startswith("/") or not container_path.startswith("/"):
            raise ConfigError(f"host_paths entries must be absolute: {host_path}")
        host_paths[host_path] = container_path
    if len(set(host_paths.values())) != len(host_paths):
        raise ConfigError("host_paths must not mount two host paths on one container path")
    return host_paths


def validate_settings(settings: DebugSettings) -> None:
    if settings.wait_poll_interval_sec > settings.wait_timeout_sec:
        raise ConfigError("wait_poll_interval_sec must be <= wait_timeout_sec")
    wait_timeout = settings.policy("wait").timeout_sec
    if wait_timeout and settings.wait_timeout_sec > wait_timeout:
        raise ConfigError(
            "wait_timeout_sec must be <= tasks.wait.timeout_sec, "
            "otherwise the readiness deadline can never be reported"
        )


def parse_settings(raw: object, base: DebugSettings | None = None) -> DebugSettings:
    defaults = base or DebugSettings()
    if raw is None:
        return defaults
    data = _ensure_mapping("settings", raw, _ALLOWED_ROOT_KEYS)

    namespace = data.get("namespace", defaults.namespace)
    if not _is_dns_label(namespace):
        raise ConfigError("namespace must be a DNS-1123 label")
    container_name = data.get("container_name", defaults.container_name)
    if not _is_dns_label(container_name):
        raise ConfigError("container_name must be a DNS-1123 label")
    name_prefix = data.get("name_prefix", defaults.name_prefix)
    if not _is_dns_label(name_prefix):
        raise ConfigError("name_prefix must be a DNS-1123 label")
    image = data.get("image", defaults.image)
    if not _is_non_blank_str(image):
        raise ConfigError("image must be non-empty string")
    term = data.get("term", defaults.term)
    if not _is_non_blank_str(term):
        raise ConfigError("term must be non-empty string")
    placement = data.get("placement", defaults.placement)
    if placement not in PLACEMENT_VALUES:
        raise ConfigError(f"placement must be one of {sorted(PLACEMENT_VALUES)}")

    sleep_seconds = data.get("sleep_seconds", defaults.sleep_seconds)
    if not _is_positive_int(sleep_seconds):
        raise ConfigError("sleep_seconds must be int >= 1")

    host_paths = defaults.host_paths
    if "host_paths" in data:
        host_paths = _parse_host_paths(data["host_paths"])

    backoff = defaults.backoff
    if "backoff" in data:
        backoff = _parse_backoff(data["backoff"], defaults.backoff)

    tasks = dict(defaults.tasks)
    if "tasks" in data:
        raw_tasks = _ensure_mapping("tasks", data["tasks"], set(STEP_NAMES))
        for step, raw_policy in raw_tasks.items():
            tasks[step] = _parse_policy(step, raw_policy, defaults.tasks[step])

    kubeconfig = data.get("kubeconfig", defaults.kubeconfig)
    if kubeconfig is not None and not _is_non_blank_str(kubeconfig):
        raise ConfigError("kubeconfig must be non-empty string when provided")
    context = data.get("context", defaults.context)
    if context is not None and not _is_non_blank_str(context):
        raise ConfigError("context must be non-empty string when provided")

    settings = DebugSettings(
        namespace=namespace,
        image=image,
        container_name=container_name,
        name_prefix=name_prefix,
        placement=cast(Placement, placement),
        term=term,
        host_paths=host_paths,
        sleep_seconds=sleep_seconds,
        wait_poll_interval_sec=_positive_float(
            "wait_poll_interval_sec",
            data.get("wait_poll_interval_sec", defaults.wait_poll_interval_sec),
        ),
        wait_timeout_sec=_positive_float(
            "wait_timeout_sec", data.get("wait_timeout_sec", defaults.wait_timeout_sec)
        ),
        backoff=backoff,
        tasks=tasks,
        kubeconfig=kubeconfig,
        context=context,
    )
    validate_settings(settings)
    return settings


def load_settings(path: Path | None) -> DebugSettings:
    if path is None:
        return DebugSettings()
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except UnicodeError as exc:
        raise ConfigError(f"failed to decode config file as utf-8: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse yaml: {exc}") from exc
    return parse_settings(raw)
