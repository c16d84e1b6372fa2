"""
Broker connection settings.

Values come from a single .env file (key=value lines) overlaid by the process
environment, which always wins. Keys are looked up with a prefix (MQTT_ by
default), e.g. MQTT_HOST_NAME, MQTT_TCP_PORT.

Recognized keys (without prefix) and defaults:
  HOST_NAME              required
  TCP_PORT               8883
  USE_TLS                true
  CLEAN_SESSION          true
  KEEP_ALIVE_IN_SECONDS  30
  CLIENT_ID, USERNAME, PASSWORD,
  CA_FILE, CERT_FILE, KEY_FILE, KEY_FILE_PASSWORD   ""
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import dotenv_values

DEFAULT_PREFIX = "MQTT_"

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_INT_RE = re.compile(r"[+-]?[0-9]+")


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


@dataclass(frozen=True, slots=True)
class SettingKey:
    name: str
    default: str = ""


SETTINGS_SCHEMA: tuple[SettingKey, ...] = (
    SettingKey("HOST_NAME"),
    SettingKey("TCP_PORT", "8883"),
    SettingKey("USE_TLS", "true"),
    SettingKey("CLEAN_SESSION", "true"),
    SettingKey("KEEP_ALIVE_IN_SECONDS", "30"),
    SettingKey("CLIENT_ID"),
    SettingKey("USERNAME"),
    SettingKey("PASSWORD"),
    SettingKey("CA_FILE"),
    SettingKey("CERT_FILE"),
    SettingKey("KEY_FILE"),
    SettingKey("KEY_FILE_PASSWORD"),
)


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    hostname: str
    tcp_port: int = 8883
    use_tls: bool = True
    clean_session: bool = True
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    key_file_password: str = ""
    keep_alive_s: int = 30
    client_id: str = ""
    username: str = ""
    password: str = ""

    def __post_init__(self) -> None:
        if not self.hostname:
            raise ConfigError("HOST_NAME is required", key="HOST_NAME")
        if bool(self.cert_file) != bool(self.key_file):
            raise ConfigError(
                "CERT_FILE and KEY_FILE must be set together", key="CERT_FILE"
            )
        if self.cert_file and self.key_file and self.key_file_password:
            raise ConfigError(
                "Password protected key files are not supported",
                key="KEY_FILE_PASSWORD",
            )

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.tcp_port}"

    def redacted(self) -> dict[str, Any]:
        """Field values safe to log: secrets are masked."""
        out: dict[str, Any] = {}
        for f in fields(self):
            name, value = f.name, getattr(self, f.name)
            if name in ("password", "key_file_password") and value:
                value = "***"
            out[name] = value
        return out


def _parse_int(key: str, raw: str, lo: int, hi: int) -> int:
    # int() would also take "1_883", " 8883 " and non-ASCII digits
    if not _INT_RE.fullmatch(raw):
        raise ConfigError(f"Invalid integer for {key}: {raw!r}", key=key)
    value = int(raw)
    if not (lo <= value <= hi):
        raise ConfigError(f"{key} out of range [{lo}, {hi}]: {value}", key=key)
    return value


def _parse_bool(key: str, raw: str) -> bool:
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}", key=key)


def _read_env_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise ConfigError(f"could not load .env file: {path} does not exist")
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"could not load .env file {path}: {exc}") from exc
    # keys without "=" come back as None
    return {k: v for k, v in values.items() if v is not None}


def collect_raw(
    env_file: Optional[str | os.PathLike[str]],
    *,
    prefix: str = DEFAULT_PREFIX,
    environ: Optional[Mapping[str, str]] = None,
    schema: tuple[SettingKey, ...] = SETTINGS_SCHEMA,
) -> dict[str, str]:
    """
    Return {name: raw string} for every key in schema, defaults applied.
    Empty values count as unset.
    """
    file_values = _read_env_file(Path(env_file)) if env_file is not None else {}
    env = os.environ if environ is None else environ

    raw: dict[str, str] = {}
    for setting in schema:
        full = prefix + setting.name
        value = env.get(full) or file_values.get(full) or ""
        raw[setting.name] = value or setting.default
    return raw


def resolve(
    env_file: Optional[str | os.PathLike[str]],
    *,
    prefix: str = DEFAULT_PREFIX,
    environ: Optional[Mapping[str, str]] = None,
    schema: tuple[SettingKey, ...] = SETTINGS_SCHEMA,
) -> ConnectionSettings:
    """
    Resolve connection settings from env_file and the process environment.

    Returns an immutable ConnectionSettings. Raises ConfigError on any missing
    or malformed value; nothing is partially applied.
    """
    raw = collect_raw(env_file, prefix=prefix, environ=environ, schema=schema)

    def key(name: str) -> str:
        return prefix + name

    if not raw["HOST_NAME"]:
        raise ConfigError(
            f"Missing required environment variable: {key('HOST_NAME')}",
            key=key("HOST_NAME"),
        )

    return ConnectionSettings(
        hostname=raw["HOST_NAME"],
        tcp_port=_parse_int(key("TCP_PORT"), raw["TCP_PORT"], 1, 65535),
        use_tls=_parse_bool(key("USE_TLS"), raw["USE_TLS"]),
        clean_session=_parse_bool(key("CLEAN_SESSION"), raw["CLEAN_SESSION"]),
        keep_alive_s=_parse_int(
            key("KEEP_ALIVE_IN_SECONDS"), raw["KEEP_ALIVE_IN_SECONDS"], 0, 65535
        ),
        client_id=raw["CLIENT_ID"],
        username=raw["USERNAME"],
        password=raw["PASSWORD"],
        ca_file=raw["CA_FILE"],
        cert_file=raw["CERT_FILE"],
        key_file=raw["KEY_FILE"],
        key_file_password=raw["KEY_FILE_PASSWORD"],
    )
