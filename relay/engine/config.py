"""Server configuration: defaults, config file, then environment.

Precedence (highest wins):

1. Environment variables (``ANTHROPIC_AUTH_TOKEN``, ``ANTHROPIC_BASE_URL``,
   ``API_TIMEOUT_MS``, ``PORT``, ``CLAUDE_BINARY``)
2. Config file (YAML, or the legacy ``config.json`` which is valid YAML)
3. Built-in defaults

Example file:
    env:
      ANTHROPIC_AUTH_TOKEN: sk-...
      ANTHROPIC_BASE_URL: https://api.anthropic.com
      API_TIMEOUT_MS: "300000"
    permissions:
      defaultMode: bypassPermissions
    server:
      port: 3000
      host: localhost
      keepRunningInBackground: true
      sendMaxRestarts: 3
    claudeBinary: /usr/local/bin/claude
    dataDir: ./data
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_CONFIG_CANDIDATES = ("config.json", "relay.yaml")


def _default_env() -> dict[str, Any]:
    return {
        "ANTHROPIC_AUTH_TOKEN": "",
        "ANTHROPIC_BASE_URL": DEFAULT_BASE_URL,
        "API_TIMEOUT_MS": "300000",
        "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": 1,
    }


def _default_permissions() -> dict[str, Any]:
    return {"allow": [], "defaultMode": "bypassPermissions"}


@dataclass
class RelayConfig:
    """Resolved relay server configuration."""

    # Variables exported to the agent process.
    env: dict[str, Any] = field(default_factory=_default_env)
    permissions: dict[str, Any] = field(default_factory=_default_permissions)
    enabled_plugins: dict[str, Any] = field(default_factory=dict)

    host: str = "localhost"
    port: int = 3000
    # Keep the agent alive after the SSE client disconnects.
    keep_running_in_background: bool = True

    agent_binary: str = "./claude"

    # Delay between a transport attaching and the first agent start,
    # so response headers reach the client first.
    start_delay_seconds: float = 0.5
    send_retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Idle SSE connections get a comment frame this often.
    keepalive_seconds: float = 30.0
    # None keeps the replay cache unbounded.
    max_cached_events: int | None = None

    data_dir: Path = field(default_factory=Path.cwd)
    public_dir: Path | None = None
    webview_dir: Path | None = None

    config_path: Path | None = None

    @property
    def base_url(self) -> str:
        return str(self.env.get("ANTHROPIC_BASE_URL") or DEFAULT_BASE_URL)

    @property
    def api_timeout_ms(self) -> str:
        return str(self.env.get("API_TIMEOUT_MS") or "")

    @property
    def config_exists(self) -> bool:
        return self.config_path is not None and self.config_path.exists()

    def resolve_api_key(self, environ: Mapping[str, str] | None = None) -> str:
        """``ANTHROPIC_API_KEY`` from the environment wins over the configured token."""
        environ = os.environ if environ is None else environ
        if environ.get("ANTHROPIC_API_KEY"):
            return environ["ANTHROPIC_API_KEY"]
        return str(self.env.get("ANTHROPIC_AUTH_TOKEN") or "")


def resolve_config_path(
    explicit: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> Path:
    """Pick the config file to read.

    Fallback order:
    1. Explicit path (``--config``).
    2. ``CLAUDE_CONFIG_PATH``.
    3. ``./config.json`` then ``./relay.yaml``; the first that exists.

    When nothing exists the first candidate is returned so health output
    can still report where a config file would be read from.
    """
    environ = os.environ if environ is None else environ
    if explicit:
        return Path(explicit).expanduser()
    if environ.get("CLAUDE_CONFIG_PATH"):
        return Path(environ["CLAUDE_CONFIG_PATH"]).expanduser()
    base = cwd or Path.cwd()
    candidates = [base / name for name in DEFAULT_CONFIG_CANDIDATES]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_config: parse error in %s: %s", path, exc)
        raise ConfigError(str(path), str(exc)) from exc
    except OSError as exc:
        logger.error("load_config: cannot read %s: %s", path, exc)
        raise ConfigError(str(path), str(exc)) from exc
    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")
    return raw


def _ms_to_seconds(value: Any, default: float) -> float:
    try:
        return max(0.0, float(value) / 1000.0)
    except (TypeError, ValueError):
        return default


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    data_dir: str | Path | None = None,
) -> RelayConfig:
    """Build a RelayConfig from defaults, the config file and the environment."""
    environ = os.environ if environ is None else environ
    config_path = resolve_config_path(path, environ)
    config = RelayConfig(config_path=config_path)

    raw: dict[str, Any] = {}
    if config_path.exists():
        raw = _read_config_file(config_path)
        logger.info(
            "Config loaded from %s (sections: %s)",
            config_path, ", ".join(sorted(raw)) or "(empty)",
        )
    else:
        logger.info("No config file found at %s, using defaults", config_path)

    # env and server merge key-by-key; other sections replace wholesale.
    config.env.update(raw.get("env") or {})
    if isinstance(raw.get("permissions"), dict):
        config.permissions = raw["permissions"]
    if isinstance(raw.get("enabledPlugins"), dict):
        config.enabled_plugins = raw["enabledPlugins"]
    if raw.get("claudeBinary"):
        config.agent_binary = str(raw["claudeBinary"])

    server = raw.get("server") or {}
    config.host = str(server.get("host", config.host))
    config.port = int(server.get("port", config.port))
    config.keep_running_in_background = bool(
        server.get("keepRunningInBackground", config.keep_running_in_background)
    )
    if "startDelayMs" in server:
        config.start_delay_seconds = _ms_to_seconds(
            server["startDelayMs"], config.start_delay_seconds,
        )
    if "sendRetryDelayMs" in server or "sendMaxRestarts" in server:
        config.send_retry = RetryPolicy(
            max_restarts=max(0, int(server.get("sendMaxRestarts", config.send_retry.max_restarts))),
            delay_seconds=_ms_to_seconds(
                server.get("sendRetryDelayMs", config.send_retry.delay_seconds * 1000),
                config.send_retry.delay_seconds,
            ),
        )
    if "keepaliveSeconds" in server:
        config.keepalive_seconds = float(server["keepaliveSeconds"])
    if server.get("maxCachedEvents"):
        config.max_cached_events = int(server["maxCachedEvents"])

    base = config_path.parent
    for key, attr in (("dataDir", "data_dir"), ("publicDir", "public_dir"), ("webviewDir", "webview_dir")):
        if raw.get(key):
            value = Path(str(raw[key])).expanduser()
            setattr(config, attr, value if value.is_absolute() else base / value)
    if data_dir is not None:
        config.data_dir = Path(data_dir)

    # Environment has the final say.
    for name in ("ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL", "API_TIMEOUT_MS"):
        if environ.get(name):
            config.env[name] = environ[name]
    if environ.get("PORT"):
        try:
            config.port = int(environ["PORT"])
        except ValueError:
            logger.warning("Ignoring non-integer PORT=%r", environ["PORT"])
    if environ.get("CLAUDE_BINARY"):
        config.agent_binary = environ["CLAUDE_BINARY"]

    return config
