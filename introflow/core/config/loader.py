"""Configuration loading utilities.

Reads ``config.yaml``, expands ``${VAR}`` references from the environment and
validates the result into a ``Config``. A reference that cannot be resolved is
a hard error: a worker must never start against a literal ``${INTROFLOW_DB}``
database path.
"""

import logging
import os
import re
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import yaml

from introflow.core.config.models import Config

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _map_strings(obj: Any, fn: Callable[[str], Any]) -> Any:
    if isinstance(obj, dict):
        return {key: _map_strings(value, fn) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_map_strings(item, fn) for item in obj]
    if isinstance(obj, str):
        return fn(obj)
    return obj


def _iter_strings(obj: Any) -> Iterator[str]:
    if isinstance(obj, dict):
        for value in obj.values():
            yield from _iter_strings(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from _iter_strings(item)
    elif isinstance(obj, str):
        yield obj


def expand_env_vars(value: str) -> str:
    """Replace ${VAR} references with environment values.

    Unknown variables are left in place so check_unexpanded_vars can report them.
    """
    return _ENV_PATTERN.sub(lambda match: os.environ.get(match.group(1), match.group(0)), value)


def expand_env_vars_recursive(obj: Any) -> Any:
    """Expand ${VAR} references in every string of nested dicts and lists."""
    return _map_strings(obj, expand_env_vars)


def check_unexpanded_vars(data: Any, source: str) -> None:
    """Fail if any ${VAR} reference survived expansion.

    Args:
        data: Expanded configuration data.
        source: Label for the error message (usually the file path).

    Raises:
        ValueError: Listing every unresolved variable.
    """
    unresolved = sorted({f"${{{name}}}" for text in _iter_strings(data) for name in _ENV_PATTERN.findall(text)})
    if unresolved:
        raise ValueError(
            f"Unresolved environment variable(s) in {source}: {', '.join(unresolved)}. "
            f"Set these variables or remove the ${{VAR}} references."
        )


def load_config(path: Path | str | None = None) -> Config:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML file. None returns the defaults.

    Returns:
        Validated Config.

    Raises:
        FileNotFoundError: The file does not exist.
        yaml.YAMLError: The YAML is malformed.
        ValueError: Unresolved ${VAR}, a non-mapping document, or invalid values.
    """
    if path is None:
        return Config()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping of config sections, got {type(data).__name__}")

    data = expand_env_vars_recursive(data)
    check_unexpanded_vars(data, source=str(config_path))

    unknown = sorted(set(data) - set(Config.model_fields))
    if unknown:
        logger.warning(f"Ignoring unknown config section(s) in {config_path}: {', '.join(unknown)}")

    return Config(**data)
