"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .patterns import DEFAULT_CATEGORY_KEYWORDS
from .types import (
    ClassifierConfig,
    ClientConfig,
    DumpCategory,
    DumpServerConfig,
    DumpViewerConfig,
    LoggingConfig,
    StoreConfig,
    WebConfig,
)

CONFIG_FILENAMES = [
    "dump-viewer.yaml",
    "dump-viewer.yml",
    "dump-viewer.json",
    ".dump-viewer.yaml",
    ".dump-viewer.yml",
]

VENDOR_PATH_ENV = "PHP_VENDOR_PATH"
LOG_LEVEL_ENV = "DUMP_VIEWER_LOG_LEVEL"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> DumpViewerConfig:
    """Build a DumpViewerConfig from a raw dict, then apply env overrides."""
    ds_raw = raw.get("dump_server", {})
    dump_server = DumpServerConfig(
        enabled=ds_raw.get("enabled", True),
        host=ds_raw.get("host", "127.0.0.1"),
        port=int(ds_raw.get("port", 9912)),
        port_attempts=int(ds_raw.get("port_attempts", 10)),
        php_binary=ds_raw.get("php_binary", "php"),
        composer_binary=ds_raw.get("composer_binary", "composer"),
        vendor_path=ds_raw.get("vendor_path") or os.environ.get(VENDOR_PATH_ENV) or None,
        auto_install=ds_raw.get("auto_install", True),
        kill_stale=ds_raw.get("kill_stale", True),
        kill_settle_delay=float(ds_raw.get("kill_settle_delay", 0.5)),
        settle_delay=float(ds_raw.get("settle_delay", 1.0)),
        restart_delay=float(ds_raw.get("restart_delay", 2.0)),
        health_interval=float(ds_raw.get("health_interval", 5.0)),
        stop_timeout=float(ds_raw.get("stop_timeout", 5.0)),
    )

    web_raw = raw.get("web", {})
    web = WebConfig(
        host=web_raw.get("host", "127.0.0.1"),
        port=int(web_raw.get("port", 3000)),
        cors=web_raw.get("cors", True),
        auto_open=web_raw.get("auto_open", True),
        heartbeat_interval=float(web_raw.get("heartbeat_interval", 30.0)),
        send_timeout=float(web_raw.get("send_timeout", 5.0)),
    )

    store = StoreConfig(capacity=int(raw.get("store", {}).get("capacity", 1000)))

    cls_raw = raw.get("classifier", {})
    keywords = {
        name: list(words)
        for name, words in DEFAULT_CATEGORY_KEYWORDS.items()
    }
    for name, words in (cls_raw.get("category_keywords") or {}).items():
        keywords[name] = [str(w) for w in (words or [])]
    classifier = ClassifierConfig(
        categorize=bool(cls_raw.get("categorize", False)),
        category_keywords=keywords,
    )

    client_raw = raw.get("client", {})
    client = ClientConfig(
        attach=client_raw.get("attach"),
        max_attempts=int(client_raw.get("max_attempts", 10)),
        base_delay=float(client_raw.get("base_delay", 1.0)),
        max_delay=float(client_raw.get("max_delay", 30.0)),
        connect_timeout=float(client_raw.get("connect_timeout", 5.0)),
    )

    log_raw = raw.get("logging", {})
    logging_config = LoggingConfig(
        level=str(os.environ.get(LOG_LEVEL_ENV) or log_raw.get("level", "INFO")).upper(),
        format=log_raw.get("format", LoggingConfig.format),
    )

    return DumpViewerConfig(
        version=str(raw.get("version", "1.0")),
        dump_server=dump_server,
        web=web,
        store=store,
        classifier=classifier,
        client=client,
        logging=logging_config,
    )


def validate_config(config: DumpViewerConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    for label, port in (
        ("dump_server.port", config.dump_server.port),
        ("web.port", config.web.port),
    ):
        if not 1 <= port <= 65535:
            errors.append(f"{label} ({port}) must be between 1 and 65535")

    if config.dump_server.port_attempts < 1:
        errors.append("dump_server.port_attempts must be >= 1")

    if config.store.capacity < 1:
        errors.append("store.capacity must be >= 1")

    for label, value in (
        ("dump_server.stop_timeout", config.dump_server.stop_timeout),
        ("dump_server.health_interval", config.dump_server.health_interval),
        ("web.heartbeat_interval", config.web.heartbeat_interval),
        ("web.send_timeout", config.web.send_timeout),
        ("client.connect_timeout", config.client.connect_timeout),
        ("client.base_delay", config.client.base_delay),
    ):
        if value <= 0:
            errors.append(f"{label} must be > 0")

    if config.client.max_delay < config.client.base_delay:
        errors.append(
            f"client.max_delay ({config.client.max_delay}) must be >= "
            f"client.base_delay ({config.client.base_delay})"
        )
    if config.client.max_attempts < 1:
        errors.append("client.max_attempts must be >= 1")
    if config.client.attach and ":" not in config.client.attach:
        errors.append(f"client.attach ({config.client.attach}) must be HOST:PORT")

    if config.logging.level not in _LOG_LEVELS:
        errors.append(f"logging.level '{config.logging.level}' is not a valid level")

    for name in config.classifier.category_keywords:
        try:
            DumpCategory.parse(name)
        except ValueError:
            errors.append(f"classifier.category_keywords: unknown category '{name}'")

    return errors


def configure_logging(config: LoggingConfig) -> None:
    """Configure root logging once at process startup."""
    logging.basicConfig(level=getattr(logging, config.level, logging.INFO), format=config.format)


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> DumpViewerConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
