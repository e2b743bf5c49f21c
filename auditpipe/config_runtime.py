"""Runtime configuration for AuditPipe - centralized configuration management."""

import copy
import json
import os
from pathlib import Path
from typing import Any

from auditpipe.utils.constants import CONFIG_FILE_NAME, DEFAULT_MAX_FILE_SIZE, ENV_PREFIX
from auditpipe.utils.logging import logger

DEFAULTS = {
    "scheduler": {
        "max_concurrency": 4,
        "max_retries": 3,
        "retry_base_delay_ms": 1000,
        "task_timeout_ms": 60000,
        "max_queue_size": 10000,
        "jitter_ratio": 0.25,
        "priority_boost_on_retry": True,
    },
    "pipeline": {
        "max_file_size": DEFAULT_MAX_FILE_SIZE,
        "exclude_patterns": ["node_modules/*", ".git/*", "dist/*", "*.min.js"],
        "batch_size": 25,
        "complexity_threshold": 15,
        "max_function_lines": 50,
        "max_file_lines": 300,
        "max_nesting": 4,
        "max_params": 5,
        "max_imports": 20,
        "ai_enabled": False,
        "ai_batch_size": 10,
    },
    "ai": {
        "base_url": "",
        "model": "gpt-4o-mini",
        "timeout_seconds": 30.0,
        "max_tokens": 1024,
        "temperature": 0.2,
    },
    "paths": {
        "pf_dir": "./.pf",
        "db": "./.pf/results.db",
        "findings_json": "./.pf/findings.json",
        "ruleset": "",
    },
}


def _coerce(raw: str, default_value: Any) -> Any:
    """Convert an environment string to the type of the default."""
    if isinstance(default_value, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(default_value, int):
        return int(raw)
    if isinstance(default_value, float):
        return float(raw)
    if isinstance(default_value, list):
        return [v.strip() for v in raw.split(",") if v.strip()]
    return raw


def _type_matches(value: Any, default_value: Any) -> bool:
    if isinstance(default_value, bool):
        return isinstance(value, bool)
    if isinstance(default_value, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default_value, int):
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, type(default_value))


def load_runtime_config(root: str = ".") -> dict[str, Any]:
    """
    Load runtime configuration from .pf/config.json and environment variables.

    Config priority (highest to lowest):
    1. Environment variables (AUDITPIPE_<SECTION>_<KEY>)
    2. .pf/config.json file
    3. Built-in defaults

    Values whose type does not match the default are ignored with a warning.

    Args:
        root: Root directory to look for config file

    Returns:
        Configuration dictionary with merged values
    """
    cfg = copy.deepcopy(DEFAULTS)

    path = Path(root) / ".pf" / CONFIG_FILE_NAME
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                user = json.load(f)

            if isinstance(user, dict):
                for section, values in user.items():
                    if section not in cfg or not isinstance(values, dict):
                        continue
                    for key, value in values.items():
                        if key in cfg[section] and _type_matches(value, cfg[section][key]):
                            cfg[section][key] = value
                        else:
                            logger.warning(f"Ignoring config value {section}.{key}={value!r}")
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not load config file from {path}: {e}")
        logger.info("Continuing with default configuration")

    for section in cfg:
        for key in cfg[section]:
            env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
            if env_var in os.environ:
                try:
                    cfg[section][key] = _coerce(os.environ[env_var], cfg[section][key])
                except ValueError:
                    logger.warning(f"Invalid value for {env_var}, keeping {cfg[section][key]!r}")

    return cfg


def get_config_value(cfg: dict[str, Any], dotted: str, default: Any = None) -> Any:
    """Read `section.key` from a loaded configuration."""
    section, _, key = dotted.partition(".")
    return cfg.get(section, {}).get(key, default)
