# File: carpso/config.py
"""
Configuration and logging setup for the Carpso Engine

Settings are resolved in three layers, later layers winning:
1. CarpsoConfig defaults (in-memory store, in-memory broker)
2. A YAML file (flat mapping of field name to value)
3. CARPSO_<FIELD> environment variables, e.g. CARPSO_DATABASE_URL
"""

from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Mapping, Optional
import logging
import os
import sys

import yaml

from .domain.models import InvalidInputError
from .domain.timers import SPOT_RESERVATION_TIMEOUT_SECONDS

ENV_PREFIX = "CARPSO_"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class CarpsoConfig:
    """Runtime settings; None disables the corresponding backend"""
    database_url: Optional[str] = None
    redis_cache_url: Optional[str] = None
    cache_ttl_seconds: int = 300
    broker_type: Optional[str] = "memory"
    redis_url: str = "redis://localhost:6379"
    amqp_url: str = "amqp://localhost:5672"
    mongo_url: Optional[str] = None
    publish_max_retries: int = 3
    publish_retry_delay: float = 0.5
    reservation_timeout_seconds: int = SPOT_RESERVATION_TIMEOUT_SECONDS
    seed_defaults: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "carpso.log"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> CarpsoConfig:
    """
    Build a CarpsoConfig from defaults, an optional YAML file and the environment

    Raises:
        InvalidInputError: unknown keys or values of the wrong type
    """
    environ = os.environ if environ is None else environ
    config = CarpsoConfig()
    known = {f.name: f for f in fields(CarpsoConfig)}

    if path:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise InvalidInputError(f"Configuration file {path} must contain a mapping")

        unknown = sorted(set(data) - set(known))
        if unknown:
            raise InvalidInputError(f"Unknown configuration keys in {path}: {unknown}")
        for name, value in data.items():
            setattr(config, name, _coerce(name, value, getattr(CarpsoConfig, name, None)))

    for name in known:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            setattr(config, name, _coerce(name, raw, getattr(CarpsoConfig, name, None)))

    if config.cache_ttl_seconds <= 0:
        raise InvalidInputError("cache_ttl_seconds must be positive")
    if config.reservation_timeout_seconds <= 0:
        raise InvalidInputError("reservation_timeout_seconds must be positive")
    return config


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Convert a YAML or environment value to the type of the field default"""
    if value is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in _TRUE_VALUES
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid value for {name}: {value!r}") from e

    value = str(value)
    return value or None


def setup_logging(config: Optional[CarpsoConfig] = None) -> logging.Logger:
    """Setup application logging configuration"""
    config = config or CarpsoConfig()
    if not os.path.exists(config.log_dir):
        os.makedirs(config.log_dir)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(os.path.join(config.log_dir, config.log_file)),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger("carpso")
