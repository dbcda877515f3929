"""Configuration for flow servers and the command line.

The resolved configuration is ``DEFAULT_CONFIG`` with the user's YAML file
(``settings.config_file`` unless another path is given) merged on top:

    env: dev
    server:
      port: 8080
      path_prefix: api/
    logging:
      level: DEBUG

The ``TYPEDFLOW_ENV`` environment variable overrides ``env``.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from . import settings

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("dev", "prod")
RUN_IN_ENVS = ("all", "dev", "prod")

DEFAULT_CONFIG = {
    "env": settings.env,
    "server": {
        "host": settings.server_host,
        "port": settings.server_port,
        "path_prefix": settings.server_path_prefix,
        "run_in_env": settings.server_run_in_env,
        "body_limit": settings.server_body_limit,
        "cors": {
            "allow_origins": ["*"],
            "allow_methods": ["*"],
            "allow_headers": ["*"],
        },
    },
    "logging": {
        "level": "INFO",
    },
}

# Known keys per section, with their JSON schema
_SECTIONS: dict[str, dict[str, dict]] = {
    "server": {
        "host": {"type": "string"},
        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "path_prefix": {"type": "string"},
        "run_in_env": {"type": "string", "enum": list(RUN_IN_ENVS)},
        "body_limit": {"type": "integer", "minimum": 1},
        "cors": {"type": "object"},
    },
    "logging": {
        "level": {"type": "string"},
    },
}


def config_defaults() -> dict:
    """Fresh copy of the default configuration."""
    return copy.deepcopy(DEFAULT_CONFIG)


def config_schema() -> dict:
    """JSON Schema describing the config file."""
    properties: dict[str, Any] = {"env": {"type": "string", "enum": list(ENVIRONMENTS)}}
    for section, keys in _SECTIONS.items():
        properties[section] = {
            "type": "object",
            "properties": copy.deepcopy(keys),
            "additionalProperties": False,
        }
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }


def _merge(into: dict, overrides: dict) -> dict:
    """Recursively overlay ``overrides`` on a copy of ``into``."""
    result = copy.deepcopy(into)
    for key, value in overrides.items():
        current = result.get(key)
        result[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return result


def _read_yaml(path: Path) -> dict:
    """Read a YAML mapping; unreadable or non-mapping files count as empty."""
    if not path.is_file():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if loaded is None:
        return {}
    if isinstance(loaded, dict):
        return loaded
    logger.warning(f"Ignoring config file {path}: top level is not a mapping")
    return {}


def load_config(config_path: Optional[Path] = None) -> dict:
    """Defaults overlaid with the config file."""
    return _merge(config_defaults(), _read_yaml(config_path or settings.config_file))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_server(server: dict) -> list[str]:
    problems = []
    port = server.get("port")
    if port is not None and not (_is_int(port) and 0 <= port <= 65535):
        problems.append("server.port must be an integer between 0 and 65535")
    run_in_env = server.get("run_in_env")
    if run_in_env is not None and run_in_env not in RUN_IN_ENVS:
        problems.append(f"server.run_in_env must be one of {list(RUN_IN_ENVS)}")
    body_limit = server.get("body_limit")
    if body_limit is not None and not (_is_int(body_limit) and body_limit >= 1):
        problems.append("server.body_limit must be a positive integer")
    if "cors" in server and not isinstance(server["cors"], dict):
        problems.append("server.cors must be an object")
    return problems


def validate_config_dict(data: Any) -> list[str]:
    """
    Check a config mapping.

    Returns:
        Human readable problems; empty when the config is valid
    """
    if not isinstance(data, dict):
        return ["Config must be a mapping/object"]

    problems = [
        f"Unknown config key: {key}"
        for key in data
        if key != "env" and key not in _SECTIONS
    ]
    if "env" in data and data["env"] not in ENVIRONMENTS:
        problems.append(f"env must be one of {list(ENVIRONMENTS)}")

    for section, known in _SECTIONS.items():
        if section not in data:
            continue
        values = data[section]
        if not isinstance(values, dict):
            problems.append(f"{section} must be an object")
            continue
        problems.extend(f"Unknown {section} key: {key}" for key in values if key not in known)
        if section == "server":
            problems.extend(_check_server(values))

    return problems


def validate_config_file(config_path: Optional[Path] = None) -> list[str]:
    """Check the config file; a missing file is valid."""
    return validate_config_dict(_read_yaml(config_path or settings.config_file))


def get_current_env(config: Optional[dict] = None) -> str:
    """Current environment: the env var, else the config's ``env``, else the default."""
    env = os.environ.get(settings.env_var)
    if env:
        return env.lower()
    if config and config.get("env"):
        return str(config["env"]).lower()
    return settings.env


def is_dev_env(config: Optional[dict] = None) -> bool:
    return get_current_env(config) == "dev"
