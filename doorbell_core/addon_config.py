from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .core_types import DisconnectPolicy
from .errors import ConfigError
from .gatt import normalize_address

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_HOST = "maker.ifttt.com"
DEFAULT_CONNECTION_TIMEOUT_S = 600.0  # 10 minutes
DEFAULT_HTTP_TIMEOUT_S = 10.0

# Public module-level handles; populated by init_config()
CONFIG: dict[str, Any] = {}
CONFIG_SOURCE: Path | None = None


def _candidate_paths() -> list[Path]:
    """Ordered YAML config locations (explicit, add-on, system, local)."""
    env_path = os.environ.get("CONFIG_PATH")
    paths: list[Path] = []
    if env_path:
        paths.append(Path(env_path))
    paths.extend(
        [
            Path("/data/config.yaml"),
            Path("/etc/doorbell20/config.yaml"),
            Path.cwd() / "config.yaml",
        ]
    )
    return paths


def _load_options_json(
    path: Path = Path("/data/options.json"),
) -> tuple[dict[str, Any], Path | None]:
    """
    Load add-on style options (JSON). Returns (data, source_path).
    """
    if not path.exists():
        logger.debug("[CONFIG] options.json not found: %s", path)
        return {}, None
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        logger.warning("[CONFIG] Failed to parse options.json %s: %s", path, exc)
        return {}, None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("[CONFIG] Failed to read options.json %s: %s", path, exc)
        return {}, None
    if not isinstance(data, dict):
        logger.warning("[CONFIG] options.json root not a mapping: %s", path)
        return {}, None
    logger.info("[CONFIG] Loaded options from: %s", path)
    return data, path


def _load_yaml_cfg(
    paths: list[Path] | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """
    Load YAML config from the first valid candidate path.
    Returns (data, source_path). Empty dict if none valid.
    """
    candidates = paths or _candidate_paths()
    for pth in candidates:
        if not pth.exists():
            logger.debug("[CONFIG] Path not found: %s", pth)
            continue
        try:
            with pth.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            logger.warning("[CONFIG] Failed to parse YAML %s: %s", pth, exc)
            continue
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[CONFIG] Failed to read YAML %s: %s", pth, exc)
            continue
        if not isinstance(data, dict):
            logger.warning("[CONFIG] YAML root not a mapping: %s", pth)
            continue
        logger.info("[CONFIG] Loaded YAML config from: %s", pth)
        return data, pth
    return {}, None


def init_config(
    yaml_paths: list[Path] | None = None,
    options_path: Path | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Populate module-level CONFIG & CONFIG_SOURCE and return them.

    options.json values override YAML values. Having neither is not an error:
    the command line may carry everything.
    """
    global CONFIG_SOURCE
    opts, opts_src = (
        _load_options_json(options_path) if options_path else _load_options_json()
    )
    yml, yml_src = _load_yaml_cfg(yaml_paths)

    merged: dict[str, Any] = {}
    merged.update(yml)
    merged.update(opts)

    CONFIG.clear()
    CONFIG.update(merged)
    CONFIG_SOURCE = opts_src or yml_src
    logger.debug("[CONFIG] Active source: %s", CONFIG_SOURCE)
    return CONFIG, CONFIG_SOURCE


def load_config(
    force: bool = False, path: str | Path | None = None
) -> tuple[dict[str, Any], Path | None]:
    """
    Produce the file-based configuration (cached after the first load).
    `path` puts an explicit YAML file ahead of the default candidates.
    """
    if CONFIG and not force and path is None:
        return CONFIG, CONFIG_SOURCE
    yaml_paths = None
    if path is not None:
        yaml_paths = [Path(path), *_candidate_paths()]
    return init_config(yaml_paths)


@dataclass(frozen=True)
class BridgeSettings:
    """Validated runtime settings for one bridge process."""

    webhook_key: str
    device_address: str
    doorbell_event: str
    failure_event: str | None = None
    disconnect_policy: DisconnectPolicy = DisconnectPolicy.REARM
    connection_timeout_s: float = DEFAULT_CONNECTION_TIMEOUT_S
    webhook_host: str = DEFAULT_WEBHOOK_HOST
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    ble_adapter: str | None = None
    log_level: str | None = None
    log_path: str | None = None


# setting name -> (config key, environment variable)
_SOURCES = {
    "webhook_key": ("webhook_key", "DOORBELL_WEBHOOK_KEY"),
    "device_address": ("device_address", "DOORBELL_DEVICE_ADDRESS"),
    "doorbell_event": ("doorbell_event", "DOORBELL_EVENT"),
    "failure_event": ("failure_event", "DOORBELL_FAILURE_EVENT"),
    "disconnect_policy": ("disconnect_policy", "DOORBELL_DISCONNECT_POLICY"),
    "connection_timeout_s": ("connection_timeout_s", "DOORBELL_CONNECTION_TIMEOUT"),
    "webhook_host": ("webhook_host", "DOORBELL_WEBHOOK_HOST"),
    "http_timeout_s": ("http_timeout_s", None),
    "ble_adapter": ("ble_adapter", "DOORBELL_BLE_ADAPTER"),
    "log_level": ("log_level", "DOORBELL_LOG_LEVEL"),
    "log_path": ("log_path", "DOORBELL_LOG_PATH"),
}


def _pick(
    name: str,
    cfg: Mapping[str, Any],
    args: Any,
    environ: Mapping[str, str],
    default: Any = None,
) -> Any:
    """CLI value, then environment, then config file, then `default`."""
    cli = getattr(args, name, None) if args is not None else None
    if cli not in (None, ""):
        return cli
    key, env_key = _SOURCES[name]
    if env_key and environ.get(env_key):
        return environ[env_key]
    value = cfg.get(key)
    if value in (None, ""):
        return default
    return value


def _positive_float(name: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if result <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return result


def build_settings(
    cfg: Mapping[str, Any] | None = None,
    args: Any = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeSettings:
    """Merge config, environment and CLI values into BridgeSettings.

    Raises ConfigError when a required value is missing or malformed.
    """
    cfg = cfg if cfg is not None else {}
    environ = os.environ if environ is None else environ

    def pick(name: str, default: Any = None) -> Any:
        return _pick(name, cfg, args, environ, default)

    webhook_key = pick("webhook_key")
    if not webhook_key:
        raise ConfigError("webhook key is required")
    doorbell_event = pick("doorbell_event")
    if not doorbell_event:
        raise ConfigError("doorbell event name is required")

    raw_address = pick("device_address")
    if not raw_address:
        raise ConfigError("device hardware address is required")
    try:
        device_address = normalize_address(str(raw_address))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    raw_policy = pick("disconnect_policy", DisconnectPolicy.REARM.value)
    try:
        policy = DisconnectPolicy(str(raw_policy).lower())
    except ValueError as exc:
        choices = ", ".join(p.value for p in DisconnectPolicy)
        raise ConfigError(
            f"disconnect policy must be one of: {choices}; got {raw_policy!r}"
        ) from exc

    failure_event = pick("failure_event") or None
    if policy is DisconnectPolicy.REARM and not failure_event:
        raise ConfigError("failure event name is required with the rearm policy")

    return BridgeSettings(
        webhook_key=str(webhook_key),
        device_address=device_address,
        doorbell_event=str(doorbell_event),
        failure_event=str(failure_event) if failure_event else None,
        disconnect_policy=policy,
        connection_timeout_s=_positive_float(
            "connection timeout",
            pick("connection_timeout_s", DEFAULT_CONNECTION_TIMEOUT_S),
        ),
        webhook_host=str(pick("webhook_host", DEFAULT_WEBHOOK_HOST)),
        http_timeout_s=_positive_float(
            "HTTP timeout", pick("http_timeout_s", DEFAULT_HTTP_TIMEOUT_S)
        ),
        ble_adapter=pick("ble_adapter"),
        log_level=pick("log_level"),
        log_path=pick("log_path"),
    )


__all__ = [
    "BridgeSettings",
    "CONFIG",
    "CONFIG_SOURCE",
    "DEFAULT_CONNECTION_TIMEOUT_S",
    "DEFAULT_HTTP_TIMEOUT_S",
    "DEFAULT_WEBHOOK_HOST",
    "build_settings",
    "init_config",
    "load_config",
]
