import os
from pathlib import Path
from typing import Any, Dict, Optional

import toml
import yaml
from dotenv import dotenv_values


def _project_root() -> Path:
    # dreamscape/config/config.py -> dreamscape/config -> dreamscape -> repo root
    return Path(__file__).resolve().parents[2]


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    project_root = _project_root()

    return {
        # Remote record store
        "backend": "sqlite",
        "db_path": str(project_root / "data" / "dreams.db"),
        "table": "dreams",
        "supabase_url": "",
        "supabase_key": "",
        "request_timeout_sec": 30,

        # Video rendering pipeline
        "render_api_url": "",
        "render_api_key": "",
        "render_timeout_sec": 600,
        "render_poll_interval_sec": 3,

        # Logging
        "log_file": str(project_root / "logs" / "dreamscape.log"),
        "log_level": "INFO",
        "log_console": False,
    }


# env var -> (config key, converter)
ENV_OVERRIDES = {
    "DREAMSCAPE_BACKEND": ("backend", str),
    "DREAMS_DB_PATH": ("db_path", str),
    "DREAMS_TABLE": ("table", str),
    "SUPABASE_URL": ("supabase_url", str),
    "SUPABASE_KEY": ("supabase_key", str),
    "REQUEST_TIMEOUT_SEC": ("request_timeout_sec", int),
    "RENDER_API_URL": ("render_api_url", str),
    "RENDER_API_KEY": ("render_api_key", str),
    "RENDER_TIMEOUT_SEC": ("render_timeout_sec", int),
    "RENDER_POLL_INTERVAL_SEC": ("render_poll_interval_sec", float),
    "LOG_FILE": ("log_file", str),
    "LOG_LEVEL": ("log_level", str),
    "LOG_CONSOLE": ("log_console", lambda v: v.strip().lower() == "true"),
}


def _read_config_file(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(f) or {}
        if path.suffix == ".toml":
            return toml.load(f)
    raise ValueError(f"Unsupported config format: {path.suffix} (expected .toml, .yaml or .yml)")


def _find_env_file() -> Optional[Path]:
    project_root = _project_root()
    candidates = [
        project_root / "dreamscape" / ".env",
        project_root / ".env",
    ]
    return next((p for p in candidates if p.exists()), None)


def apply_env_overrides(config: Dict[str, Any], env_vars: Dict[str, Optional[str]]) -> Dict[str, Any]:
    for env_key, (config_key, convert) in ENV_OVERRIDES.items():
        value = env_vars.get(env_key)
        if value is None or value == "":
            continue
        try:
            config[config_key] = convert(value)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_key}: {value!r}") from e
    return config


def load_config(path: Optional[os.PathLike] = None, env_file: Optional[os.PathLike] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Precedence (lowest to highest): defaults, config file, .env file, process environment.
    """
    config = get_default_config()

    if path is not None:
        file_config = _read_config_file(Path(path))
        config.update({k: v for k, v in file_config.items() if v is not None})

    env_path = Path(env_file) if env_file is not None else _find_env_file()
    env_vars: Dict[str, Optional[str]] = {}
    if env_path is not None and env_path.exists():
        env_vars.update(dotenv_values(env_path))
    env_vars.update({k: os.environ[k] for k in ENV_OVERRIDES if k in os.environ})

    apply_env_overrides(config, env_vars)

    backend = str(config["backend"]).lower()
    if backend not in ("sqlite", "rest"):
        raise ValueError(f"Unknown backend: {config['backend']!r} (expected 'sqlite' or 'rest')")
    config["backend"] = backend
    return config
