"""
otcx/config.py

Configuration: a YAML file mapped onto dataclasses.

    refresh:
      order_interval: 30        # full refresh period, seconds
      acceptance_interval: 5    # proof-acceptance poll period, seconds
      timeout: 30               # overall budget for one refresh, seconds
      max_concurrency: 16
    explorers:
      default: https://sepolia.etherscan.io
      projects: {<slug>: <explorer url>}
      delivery_assets: {<slug>: <token address>}
    resolver:
      mode: ledger              # ledger | explorer
      api_key_env: OTCX_EXPLORER_API_KEY
      timeout: 10
    metadata:
      gateway: https://gateway.pinata.cloud/ipfs/
    validation:
      tolerance_bps: 0
    logging:
      level: INFO
      format: "%(asctime)s %(levelname)s %(name)s: %(message)s"

Environment overrides: OTCX_LOG_LEVEL, OTCX_REFRESH_TIMEOUT.
Unknown sections or keys and out-of-range values raise ConfigError.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from otcx.core.exceptions import ConfigError
from otcx.metadata import DEFAULT_GATEWAY

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class RefreshConfig:
    order_interval:      float = 30.0
    acceptance_interval: float = 5.0
    timeout:             float = 30.0
    max_concurrency:     int = 16

    def validate(self) -> None:
        for name in ("order_interval", "acceptance_interval", "timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"refresh.{name} must be positive", {name: getattr(self, name)})
        if self.max_concurrency < 1:
            raise ConfigError("refresh.max_concurrency must be at least 1")


@dataclass
class ExplorerConfig:
    default:         Optional[str] = None
    projects:        Dict[str, str] = field(default_factory=dict)
    delivery_assets: Dict[str, str] = field(default_factory=dict)

    def explorer_for(self, slug: str) -> Optional[str]:
        return _lookup(self.projects, slug) or self.default

    def delivery_asset_for(self, slug: str) -> Optional[str]:
        return _lookup(self.delivery_assets, slug)

    def validate(self) -> None:
        if self.default is not None and (
            not isinstance(self.default, str)
            or not self.default.startswith(("http://", "https://"))
        ):
            raise ConfigError("explorers.default must be an http(s) URL")
        for slug, url in self.projects.items():
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                raise ConfigError("explorer URL must be http(s)", {"project": slug})


@dataclass
class ResolverConfig:
    mode:        str = "ledger"
    api_key_env: str = "OTCX_EXPLORER_API_KEY"
    timeout:     float = 10.0

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")

    def validate(self) -> None:
        if self.mode not in ("ledger", "explorer"):
            raise ConfigError("resolver.mode must be 'ledger' or 'explorer'", {"mode": self.mode})
        if self.timeout <= 0:
            raise ConfigError("resolver.timeout must be positive")


@dataclass
class MetadataConfig:
    gateway: str = DEFAULT_GATEWAY

    def validate(self) -> None:
        if not self.gateway.startswith(("http://", "https://")):
            raise ConfigError("metadata.gateway must be http(s)", {"gateway": self.gateway})


@dataclass
class ValidationConfig:
    tolerance_bps: int = 0

    def validate(self) -> None:
        if not 0 <= self.tolerance_bps <= 10_000:
            raise ConfigError("validation.tolerance_bps must be 0..10000")


@dataclass
class LoggingConfig:
    level:  str = "INFO"
    format: str = DEFAULT_LOG_FORMAT

    def validate(self) -> None:
        if self.level.upper() not in _LEVELS:
            raise ConfigError("logging.level is not a level name", {"level": self.level})


_SECTIONS = {
    "refresh":    RefreshConfig,
    "explorers":  ExplorerConfig,
    "resolver":   ResolverConfig,
    "metadata":   MetadataConfig,
    "validation": ValidationConfig,
    "logging":    LoggingConfig,
}


def _lookup(table: Mapping[str, str], key: str) -> Optional[str]:
    key = key.lower()
    for k, v in table.items():
        if k.lower() == key:
            return v
    return None


def _build_section(name: str, raw: Any):
    cls = _SECTIONS[name]
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"config section '{name}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"unknown keys in '{name}'", {"keys": ",".join(unknown)})

    kwargs = {}
    for key, value in raw.items():
        default = known[key].default
        try:
            if isinstance(default, bool) or default is None:
                kwargs[key] = value
            elif isinstance(default, int) and not isinstance(default, bool):
                kwargs[key] = int(value)
            elif isinstance(default, float):
                kwargs[key] = float(value)
            elif isinstance(default, str):
                kwargs[key] = str(value)
            else:
                if not isinstance(value, dict):
                    raise TypeError("expected a mapping")
                kwargs[key] = {str(k): str(v) for k, v in value.items()}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"bad value for {name}.{key}", {"error": str(e)}) from e
    return cls(**kwargs)


@dataclass
class OtcxConfig:
    refresh:    RefreshConfig = field(default_factory=RefreshConfig)
    explorers:  ExplorerConfig = field(default_factory=ExplorerConfig)
    resolver:   ResolverConfig = field(default_factory=ResolverConfig)
    metadata:   MetadataConfig = field(default_factory=MetadataConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    logging:    LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "OtcxConfig":
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigError("config root must be a mapping")
        unknown = sorted(set(data) - set(_SECTIONS))
        if unknown:
            raise ConfigError("unknown config sections", {"sections": ",".join(unknown)})
        config = cls(**{name: _build_section(name, data.get(name)) for name in _SECTIONS})
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "OtcxConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigError("config file not found", {"path": str(path)}) from e
        except yaml.YAMLError as e:
            raise ConfigError("config file is not valid YAML", {"path": str(path)}) from e
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "OtcxConfig":
        """File (if given) plus environment overrides."""
        config = cls.from_yaml(path) if path is not None else cls()
        config.apply_env(os.environ if environ is None else environ)
        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        if environ.get("OTCX_LOG_LEVEL"):
            self.logging.level = environ["OTCX_LOG_LEVEL"]
        if environ.get("OTCX_REFRESH_TIMEOUT"):
            try:
                self.refresh.timeout = float(environ["OTCX_REFRESH_TIMEOUT"])
            except ValueError as e:
                raise ConfigError("OTCX_REFRESH_TIMEOUT is not a number") from e
        self.validate()

    def validate(self) -> None:
        for name in _SECTIONS:
            getattr(self, name).validate()


def configure_logging(level: str = "INFO", fmt: str = DEFAULT_LOG_FORMAT) -> None:
    """Configure root logging once, from the CLI entry point."""
    logging.basicConfig(level=getattr(logging, level.upper()), format=fmt, force=True)
