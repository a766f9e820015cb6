"""Configuration module — frozen dataclass loaded from env vars, options, or YAML."""

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable

import yaml

from logstream.errors import ConfigurationError
from logstream.models import EvictionPolicy, FormatPolicy

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmgt]?)b?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def parse_size(value) -> int | None:
    """Convert a size such as ``"10m"`` or ``"512k"`` to bytes.

    Integers pass through; ``None`` and empty strings mean no limit.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigurationError(f"Size must not be negative: {value!r}")
        return int(value)
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.lower()])


@dataclass(frozen=True)
class StreamConfig:
    path: str = "./logs/application.log"
    total_files: int | None = 10
    total_size: int | None = None
    gzip: bool = False
    field_order: tuple[str, ...] = ()
    no_cycles_check: bool = False
    format: FormatPolicy | None = None
    start_new_file: bool = False
    batch_size: int = 50
    queue_capacity: int = 10000
    eviction: EvictionPolicy = EvictionPolicy.DROP_OLDEST
    retry_interval: float = 0.1
    shared: Any = False
    map: Callable | None = field(default=None, compare=False)

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.queue_capacity < 1:
            raise ConfigurationError("queue_capacity must be at least 1")
        if self.total_files is not None and self.total_files < 0:
            raise ConfigurationError("total_files must not be negative")

    @property
    def format_policy(self) -> FormatPolicy:
        """The explicit format, or the one implied by the JSON options."""
        if self.format is not None:
            return self.format
        if self.field_order:
            return FormatPolicy.ORDERED_JSON
        if self.no_cycles_check:
            return FormatPolicy.UNSAFE_JSON
        return FormatPolicy.JSON


def _coerce(name: str, value):
    if name == "total_size":
        return parse_size(value)
    if name == "field_order":
        if isinstance(value, str):
            return tuple(f.strip() for f in value.split(",") if f.strip())
        return tuple(value or ())
    if name == "format" and value is not None and not isinstance(value, FormatPolicy):
        try:
            return FormatPolicy(value)
        except ValueError:
            raise ConfigurationError(f"Unknown format: {value!r}") from None
    if name == "eviction" and not isinstance(value, EvictionPolicy):
        try:
            return EvictionPolicy(value)
        except ValueError:
            raise ConfigurationError(f"Unknown eviction policy: {value!r}") from None
    return value


def make_config(base: StreamConfig | None = None, **options) -> StreamConfig:
    """Build a StreamConfig from keyword options, parsing size strings and enums."""
    known = {f.name for f in fields(StreamConfig)}
    unknown = set(options) - known
    if unknown:
        raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}")
    coerced = {name: _coerce(name, value) for name, value in options.items()}
    return replace(base or StreamConfig(), **coerced)


def load_yaml_config(path: str | None) -> dict:
    """Load stream options from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


def load_config(yaml_path: str | None = None) -> StreamConfig:
    """Build StreamConfig from environment variables, then overlay YAML options.

    The YAML path can also be given via the ``CONFIG_PATH`` environment variable.
    """
    total_files = os.environ.get("TOTAL_FILES")
    config = make_config(
        path=os.environ.get("LOG_PATH", StreamConfig.path),
        total_files=int(total_files) if total_files else StreamConfig.total_files,
        total_size=os.environ.get("TOTAL_SIZE"),
        gzip=_parse_bool(os.environ.get("GZIP", "false")),
        field_order=os.environ.get("FIELD_ORDER", ""),
        no_cycles_check=_parse_bool(os.environ.get("NO_CYCLES_CHECK", "false")),
        format=os.environ.get("LOG_FORMAT") or None,
        start_new_file=_parse_bool(os.environ.get("START_NEW_FILE", "false")),
        batch_size=int(os.environ.get("BATCH_SIZE", StreamConfig.batch_size)),
        queue_capacity=int(os.environ.get("QUEUE_CAPACITY", StreamConfig.queue_capacity)),
        eviction=os.environ.get("EVICTION", StreamConfig.eviction.value),
        retry_interval=float(os.environ.get("RETRY_INTERVAL", StreamConfig.retry_interval)),
    )

    yaml_data = load_yaml_config(yaml_path or os.environ.get("CONFIG_PATH"))
    if yaml_data:
        config = make_config(config, **yaml_data)
    return config
