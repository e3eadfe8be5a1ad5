"""
shepherd_config.loader -- YAML parsing and environment overrides.

Internal to shepherd_config; runtime callers use ``get_active_config()``.

Failure modes:
    * Missing file       -> ``FileNotFoundError`` propagates.
    * Malformed YAML     -> ``yaml.YAMLError`` propagates.
    * Wrong value types  -> ``ValueError`` naming the offending key.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from shepherd_config.schema import (
    ApprovalPolicyConfig,
    ApprovalRuleDef,
    DatabaseConfig,
    LoggingConfig,
    RetentionConfig,
    RetryConfig,
    ShepherdConfig,
    WorkerConfig,
)
from shepherd_kernel.domain.approval import ApprovalPolicy, ApprovalRule
from shepherd_kernel.domain.types import Operation

# Environment variable -> (section, key, converter)
ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "DATABASE_URL": ("database", "url", str),
    "LOG_LEVEL": ("logging", "level", str),
    "WORKER_GENERAL_POOL_SIZE": ("worker", "general_pool_size", int),
    "WORKER_PROVIDER_POOL_SIZE": ("worker", "provider_pool_size", int),
}

_VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML document; an empty file yields {}."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _section(cls, data: Any, section: str):
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ValueError(f"{section} must be a mapping")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"{section}: unknown keys {', '.join(unknown)}")

    values = {}
    defaults = cls()
    for key, value in data.items():
        default = getattr(defaults, key)
        values[key] = _coerce(value, default, f"{section}.{key}")
    return cls(**values)


def _coerce(value: Any, default: Any, key: str) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{key} must be a boolean")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{key} must be a number")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ValueError(f"{key} must be a string")
        return value
    return value


def parse_rule(data: Mapping[str, Any]) -> ApprovalRuleDef:
    if not isinstance(data, Mapping) or not data.get("name"):
        raise ValueError("approval rule must be a mapping with a name")

    def as_tuple(key: str) -> tuple[str, ...]:
        raw = data.get(key) or []
        if isinstance(raw, str) or not isinstance(raw, list):
            raise ValueError(f"approval rule {data['name']}: {key} must be a list")
        return tuple(str(item) for item in raw)

    actions = as_tuple("actions")
    for action in actions:
        try:
            Operation(action)
        except ValueError:
            raise ValueError(
                f"approval rule {data['name']}: unknown action {action!r}"
            ) from None

    for key in ("max_cpu", "max_memory_mb"):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValueError(f"approval rule {data['name']}: {key} must be a non-negative integer")

    priority = data.get("priority", 100)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"approval rule {data['name']}: priority must be an integer")

    return ApprovalRuleDef(
        name=str(data["name"]),
        priority=priority,
        actions=actions,
        roles=as_tuple("roles"),
        namespaces=as_tuple("namespaces"),
        max_cpu=data.get("max_cpu"),
        max_memory_mb=data.get("max_memory_mb"),
        description=str(data.get("description", "")),
    )


def parse_config(data: Mapping[str, Any]) -> ShepherdConfig:
    known = {"database", "worker", "retry", "retention", "logging", "approval"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown configuration sections: {', '.join(unknown)}")

    approval = data.get("approval") or {}
    if not isinstance(approval, Mapping):
        raise ValueError("approval must be a mapping")
    rules = approval.get("rules") or []
    if not isinstance(rules, list):
        raise ValueError("approval.rules must be a list")

    return ShepherdConfig(
        database=_section(DatabaseConfig, data.get("database"), "database"),
        worker=_section(WorkerConfig, data.get("worker"), "worker"),
        retry=_section(RetryConfig, data.get("retry"), "retry"),
        retention=_section(RetentionConfig, data.get("retention"), "retention"),
        logging=_section(LoggingConfig, data.get("logging"), "logging"),
        approval=ApprovalPolicyConfig(rules=tuple(parse_rule(r) for r in rules)),
    )


def apply_env_overrides(config: ShepherdConfig, environ: Mapping[str, str]) -> ShepherdConfig:
    """Overlay the standard environment variables onto ``config``."""
    for var, (section, key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            raise ValueError(f"{var}={raw!r} is not a valid {convert.__name__}") from None
        config = replace(config, **{section: replace(getattr(config, section), **{key: value})})
    return config


def validate(config: ShepherdConfig) -> None:
    errors = config.validate()
    if config.logging.level.upper() not in _VALID_LOG_LEVELS:
        errors.append(f"logging.level {config.logging.level!r} is not a logging level")
    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )


def compute_checksum(config: ShepherdConfig) -> str:
    """SHA-256 of the canonical JSON of the effective configuration."""
    data = asdict(replace(config, checksum=""))
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_policy(config: ApprovalPolicyConfig) -> ApprovalPolicy:
    """Compile YAML rule definitions into the domain policy."""
    return ApprovalPolicy(
        rules=tuple(
            ApprovalRule(
                name=rule.name,
                priority=rule.priority,
                actions=frozenset(Operation(a) for a in rule.actions),
                roles=frozenset(rule.roles),
                namespaces=frozenset(rule.namespaces),
                max_cpu=rule.max_cpu,
                max_memory_mb=rule.max_memory_mb,
                description=rule.description,
            )
            for rule in config.rules
        )
    )


def log_level(config: ShepherdConfig) -> int:
    return getattr(logging, config.logging.level.upper())
