"""
shepherd_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way components obtain settings.
    Nothing else reads configuration files or environment variables.

Invariants enforced:
    - Defaults for every missing key; an empty file is a valid config.
    - Environment overrides (DATABASE_URL, LOG_LEVEL,
      WORKER_GENERAL_POOL_SIZE, WORKER_PROVIDER_POOL_SIZE) win over the
      file.
    - The returned config has passed validation and carries the checksum
      of its effective values.

Failure modes:
    - ``FileNotFoundError`` -- an explicit path does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``ValueError`` -- wrong types or inconsistent values.

Audit relevance:
    Every successful call emits a ``SHEPHERD_CONFIG_TRACE`` record with the
    checksum, so each worker run can be tied to the settings it ran with.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Mapping

from shepherd_config.loader import (
    apply_env_overrides,
    build_policy,
    compute_checksum,
    load_yaml_file,
    log_level,
    parse_config,
    validate,
)
from shepherd_config.schema import ShepherdConfig
from shepherd_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "shepherd.yaml"
CONFIG_PATH_ENV = "SHEPHERD_CONFIG"


def get_active_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ShepherdConfig:
    """Load, override, validate and fingerprint the configuration.

    Args:
        path: YAML file.  Defaults to ``$SHEPHERD_CONFIG`` and then to the
            packaged defaults.
        environ: Environment to read overrides from (``os.environ`` when
            omitted).
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    config = parse_config(load_yaml_file(config_path))
    config = apply_env_overrides(config, env)
    validate(config)
    config = replace(config, checksum=compute_checksum(config))

    _logger.info(
        "SHEPHERD_CONFIG_TRACE",
        extra={
            "trace_type": "SHEPHERD_CONFIG_TRACE",
            "config_path": str(config_path),
            "checksum": config.checksum,
            "database_dialect": config.database.url.split(":", 1)[0],
            "general_pool_size": config.worker.general_pool_size,
            "provider_pool_size": config.worker.provider_pool_size,
            "approval_rule_count": len(config.approval.rules),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ShepherdConfig",
    "build_policy",
    "get_active_config",
    "log_level",
]
