"""
Gateway configuration.

Values come from defaults, then an optional YAML file, then environment
variables. Every polling interval and ceiling used by the residency and
download code is tunable here.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

# env var -> field name
ENV_FIELDS = {
    "FOUNDRY_CLI": "cli_path",
    "GATEWAY_HOST": "host",
    "GATEWAY_PORT": "port",
    "GATEWAY_POLL_INTERVAL": "poll_interval_s",
    "GATEWAY_UNLOAD_TIMEOUT": "unload_timeout_s",
    "GATEWAY_LOAD_TIMEOUT": "load_timeout_s",
    "GATEWAY_HANDSHAKE_TIMEOUT": "handshake_timeout_s",
    "GATEWAY_CHAT_HANDSHAKE_TIMEOUT": "chat_handshake_timeout_s",
    "GATEWAY_PROGRESS_FLUSH": "progress_flush_s",
    "GATEWAY_DOWNLOAD_RETRIES": "download_max_retries",
    "GATEWAY_DOWNLOAD_BACKOFF": "download_backoff_s",
    "FOUNDRY_DEFAULT_PORT": "default_service_port",
    "GATEWAY_CHAT_MAX_TOKENS": "chat_max_tokens",
    "GATEWAY_MIRROR_OUTPUT": "mirror_output",
    "GATEWAY_UNLOAD_ON_STARTUP": "unload_on_startup",
    "GATEWAY_LOG_LEVEL": "log_level",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


@dataclass(frozen=True)
class GatewayConfig:
    cli_path: str = "foundry"
    host: str = "0.0.0.0"
    port: int = 3000
    poll_interval_s: float = 1.0
    unload_timeout_s: float = 60.0
    load_timeout_s: float = 120.0
    handshake_timeout_s: float = 10.0
    chat_handshake_timeout_s: float = 5.0
    progress_flush_s: float = 2.0
    download_max_retries: int = 3
    download_backoff_s: float = 2.0
    default_service_port: int = 49808
    chat_max_tokens: int = 2048
    mirror_output: bool = True
    unload_on_startup: bool = True
    log_level: str = "info"

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["GatewayConfig"] = None,
    ) -> "GatewayConfig":
        environ = os.environ if environ is None else environ
        overrides = {
            name: environ[var] for var, name in ENV_FIELDS.items() if var in environ
        }
        return (base or cls()).with_overrides(**overrides)

    @classmethod
    def from_yaml(cls, path, base: Optional["GatewayConfig"] = None) -> "GatewayConfig":
        with open(Path(path).expanduser(), "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"config file must contain a mapping: {path}")
        section = data.get("gateway", data)
        return (base or cls()).with_overrides(**section)

    @classmethod
    def load(cls, path=None, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """Defaults, then the YAML file (if any), then the environment."""
        config = cls.from_yaml(path) if path else cls()
        config = cls.from_env(environ, base=config)
        config.validate()
        return config

    def with_overrides(self, **values: Any) -> "GatewayConfig":
        known = {f.name: f for f in fields(self)}
        coerced = {}
        for name, value in values.items():
            if name not in known:
                raise ValueError(f"unknown config key: {name}")
            coerced[name] = _coerce(name, value, type(getattr(self, name)))
        return replace(self, **coerced)

    def validate(self) -> None:
        if not self.cli_path or not self.cli_path.strip():
            raise ValueError("cli_path must be a non-empty string")
        if not self.host or not self.host.strip():
            raise ValueError("host must be a non-empty string")
        for name in ("port", "default_service_port"):
            if not (1 <= getattr(self, name) <= 65535):
                raise ValueError(f"{name} must be between 1 and 65535")
        for name in (
            "poll_interval_s",
            "unload_timeout_s",
            "load_timeout_s",
            "handshake_timeout_s",
            "chat_handshake_timeout_s",
            "progress_flush_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.download_max_retries < 0:
            raise ValueError("download_max_retries must be >= 0")
        if self.download_backoff_s < 0:
            raise ValueError("download_backoff_s must be >= 0")
        if self.chat_max_tokens <= 0:
            raise ValueError("chat_max_tokens must be > 0")
        if self.log_level.lower() not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")


def _coerce(name: str, value: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"{name} must be a boolean, got: {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be {kind.__name__}, got: {value!r}") from None
