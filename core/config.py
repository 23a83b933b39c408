from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import yaml


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ['true', '1', 'yes']


# Helper function to get environment variables with type casting
def get_env_var(key: str, default: Any = None, cast_to: Callable[[Any], Any] = str) -> Any:
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def load_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f'Could not read config file {path}: {e}')
        return {}
    return data if isinstance(data, dict) else {}


# key -> (environment variable, default, cast)
SETTINGS_TABLE: Dict[str, tuple] = {
    'api_base': ('TORBOX_API_BASE', 'https://api.torbox.app', str),
    'api_version': ('TORBOX_API_VERSION', 'v1', str),
    'user_agent': ('USER_AGENT', 'TorBoxAutomationWorker/1.0', str),
    'request_timeout': ('REQUEST_TIMEOUT', 30, float),
    'min_request_interval_ms': ('MIN_REQUEST_INTERVAL_MS', 0, float),
    'max_concurrent_requests': ('MAX_CONCURRENT_REQUESTS', 0, int),
    'snapshot_retention_days': ('SNAPSHOT_RETENTION_DAYS', 30, float),
    'batch_size': ('AUTOMATION_BATCH_SIZE', 5, int),
    'metrics_concurrency': ('METRICS_CONCURRENCY', 10, int),
    'automation_interval_seconds': ('AUTOMATION_INTERVAL_SECONDS', 300, float),
    'cleanup_interval_hours': ('CLEANUP_INTERVAL_HOURS', 24, float),
    'database_path': ('DATABASE_PATH', '/app/data/automation.db', str),
    'dry_run': ('DRY_RUN', False, _as_bool),
    'structured_logs': ('STRUCTURED_LOGS', True, _as_bool),
    'debug_logging': ('DEBUG_LOGGING', False, _as_bool),
}

# Lower bounds applied by sanitize_config
_MINIMUMS = {
    'request_timeout': 1,
    'min_request_interval_ms': 0,
    'max_concurrent_requests': 0,
    'snapshot_retention_days': 1,
    'batch_size': 1,
    'metrics_concurrency': 1,
    'automation_interval_seconds': 1,
    'cleanup_interval_hours': 0,
}


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        return gen.get(key, default)

    # Precedence: YAML general > environment > built-in default
    def get(self, key: str) -> Any:
        env_key, default, cast = SETTINGS_TABLE[key]
        value = self.general(key, None)
        if value is None:
            return get_env_var(env_key, default, cast_to=cast)
        try:
            return cast(value)
        except (TypeError, ValueError):
            return default


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)
    gen = dict(out.get('general')) if isinstance(out.get('general'), dict) else {}

    for key, value in list(gen.items()):
        if key not in SETTINGS_TABLE or value is None:
            continue
        _, default, cast = SETTINGS_TABLE[key]
        try:
            coerced = cast(value)
        except (TypeError, ValueError):
            if debug_logging:
                logging.warning(f'Ignoring invalid value for {key}: {value!r}')
            coerced = default
        if key in _MINIMUMS:
            coerced = max(_MINIMUMS[key], coerced)
        gen[key] = coerced

    if gen:
        out['general'] = gen
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> None:
    problems = []
    ac = ConfigAccessor(cfg)
    unknown = [k for k in (cfg.get('general') or {}) if k not in SETTINGS_TABLE] if isinstance(cfg.get('general'), dict) else []
    for k in unknown:
        problems.append(f"Unknown general setting '{k}'; it will be ignored.")
    try:
        if float(ac.get('min_request_interval_ms') or 0) > 0 and int(ac.get('max_concurrent_requests') or 0) == 0:
            problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
        if float(ac.get('cleanup_interval_hours') or 0) == 0:
            problems.append('cleanup_interval_hours is 0; snapshot cleanup will run on every tick.')
    except (TypeError, ValueError) as e:
        problems.append(f'Invalid numeric setting: {e}')
    for p in problems:
        logging.warning(p)


@dataclass
class Settings:
    api_base: str
    api_version: str
    user_agent: str
    request_timeout: float
    min_request_interval_ms: float
    max_concurrent_requests: int
    snapshot_retention_days: float
    batch_size: int
    metrics_concurrency: int
    automation_interval_seconds: float
    cleanup_interval_hours: float
    database_path: str
    dry_run: bool
    structured_logs: bool
    debug_logging: bool


def load_settings(path: Optional[str] = None) -> Settings:
    path = path if path is not None else get_env_var('CONFIG_PATH', '/app/config.yaml')
    debug = get_env_var('DEBUG_LOGGING', default='false', cast_to=_as_bool)
    cfg = sanitize_config(load_yaml(path), debug)
    validate_config(cfg, debug)
    ac = ConfigAccessor(cfg)
    values = {key: ac.get(key) for key in SETTINGS_TABLE}
    for key, minimum in _MINIMUMS.items():
        values[key] = max(minimum, values[key])
    return Settings(**values)
