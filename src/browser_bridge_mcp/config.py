"""Configuration for the browser bridge MCP server.

Settings come from an optional JSON file (``BRIDGE_MCP_CONFIG``) and are
then overridden by individual environment variables.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

DEFAULT_RUNNER_PORT = 9876

# Capabilities that can be switched on in addition to the always-on "core" ones.
OPTIONAL_CAPABILITIES = ("history", "wait")

ImageResponses = Literal["allow", "omit"]


class ConfigError(ValueError):
    """Raised when a configuration value cannot be parsed."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_caps(value: str | list[str]) -> tuple[str, ...]:
    items = value.split(",") if isinstance(value, str) else value
    caps = tuple(item.strip() for item in items if item.strip())
    for cap in caps:
        if cap not in OPTIONAL_CAPABILITIES and not cap.startswith("core"):
            logger.warning(f"Unknown capability: {cap}")
    return caps


@dataclass(frozen=True)
class Config:
    """Resolved server configuration."""

    runner_host: str | None = None
    runner_port: int = DEFAULT_RUNNER_PORT
    capabilities: tuple[str, ...] = ()
    save_session: bool = False
    output_dir: Path | None = None
    image_responses: ImageResponses = "allow"
    server_host: str = "localhost"
    server_port: int | None = None
    one_tool: bool = False
    # Stamped once per process so every session folder lands side by side.
    started_at: float = field(default_factory=time.time)

    @classmethod
    def from_file(cls, path: str | Path) -> Config:
        """Load a config from a JSON file with camelCase or snake_case keys."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls()._merge(raw)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Config:
        """Build a config from the process environment."""
        env = os.environ if environ is None else environ
        config_file = env.get("BRIDGE_MCP_CONFIG")
        config = cls.from_file(config_file) if config_file else cls()

        overrides: dict[str, Any] = {}
        if "BRIDGE_RUNNER_HOST" in env:
            overrides["runner_host"] = env["BRIDGE_RUNNER_HOST"]
        if "BRIDGE_RUNNER_PORT" in env:
            overrides["runner_port"] = env["BRIDGE_RUNNER_PORT"]
        if "BRIDGE_MCP_CAPS" in env:
            overrides["capabilities"] = env["BRIDGE_MCP_CAPS"]
        if "BRIDGE_MCP_SAVE_SESSION" in env:
            overrides["save_session"] = _parse_bool(env["BRIDGE_MCP_SAVE_SESSION"])
        if "BRIDGE_MCP_OUTPUT_DIR" in env:
            overrides["output_dir"] = env["BRIDGE_MCP_OUTPUT_DIR"]
        if "BRIDGE_MCP_IMAGE_RESPONSES" in env:
            overrides["image_responses"] = env["BRIDGE_MCP_IMAGE_RESPONSES"]
        if "BRIDGE_MCP_HOST" in env:
            overrides["server_host"] = env["BRIDGE_MCP_HOST"]
        if "BRIDGE_MCP_PORT" in env:
            overrides["server_port"] = env["BRIDGE_MCP_PORT"]
        if "BRIDGE_MCP_ONE_TOOL" in env:
            overrides["one_tool"] = _parse_bool(env["BRIDGE_MCP_ONE_TOOL"])
        return config._merge(overrides)

    def _merge(self, values: dict[str, Any]) -> Config:
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in values.items():
            name = _snake_case(key)
            if name not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            changes[name] = _coerce(name, value)
        return replace(self, **changes)

    def output_file(self, name: str) -> Path:
        """Return a path for ``name`` inside the output directory."""
        root = self.output_dir or (
            Path(tempfile.gettempdir())
            / "browser-bridge-mcp-output"
            / time.strftime("%Y-%m-%dT%H-%M-%S", time.localtime(self.started_at))
        )
        return Path(root) / name


def _snake_case(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _coerce(name: str, value: Any) -> Any:
    try:
        if name in ("runner_port", "server_port"):
            return None if value is None else int(value)
        if name == "capabilities":
            return _parse_caps(value)
        if name == "output_dir":
            return None if value is None else Path(value)
        if name in ("save_session", "one_tool") and isinstance(value, str):
            return _parse_bool(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    if name == "image_responses" and value not in ("allow", "omit"):
        raise ConfigError(f"Invalid value for image_responses: {value!r}")
    return value
