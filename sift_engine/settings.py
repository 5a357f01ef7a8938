"""
Engine Settings

Loads EngineConfig for a host process:
- .env from the project root (python-dotenv)
- optional JSON config file at SIFT_CONFIG_PATH (sectioned, see EngineConfig.from_dict)
- SIFT_<FIELD> environment overrides, e.g. SIFT_K=8, SIFT_DAMPING=0.9
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .models.config import EngineConfig

ENV_PREFIX = "SIFT_"
CONFIG_PATH_ENV = "SIFT_CONFIG_PATH"

_ROOT_ENV = Path(__file__).resolve().parent.parent / ".env"


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load a .env file into os.environ without overriding existing variables."""
    env_path = path or _ROOT_ENV
    if not env_path.exists():
        return False
    return load_dotenv(env_path)


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a JSON object")
    return data


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """SIFT_<FIELD> variables mapped to EngineConfig field names; blank values are skipped."""
    environ = os.environ if environ is None else environ
    fields = set(EngineConfig.model_fields)
    overrides = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields and value.strip():
            overrides[name] = value.strip()
    return overrides


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> EngineConfig:
    """
    Build the engine config from file and environment.

    Precedence: environment overrides > JSON file > EngineConfig defaults.
    Raises ConfigurationError for unreadable files or invalid values.
    """
    if use_dotenv and environ is None:
        load_env_file()
    env = os.environ if environ is None else environ

    config_dict: Dict[str, Any] = {}
    file_path = path or (Path(env[CONFIG_PATH_ENV]) if env.get(CONFIG_PATH_ENV) else None)
    if file_path is not None:
        config_dict = _read_json(file_path)

    config_dict.update(env_overrides(env))
    return EngineConfig.from_dict(config_dict)


def setup_logging(debug: bool = False) -> None:
    """Configure the root logger for hosts embedding the engine."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
