"""MCP config translation — one canonical JSON shape, several native formats.

The canonical shape is the one Claude's ``--mcp-config`` accepts::

    {"mcpServers": {"name": {"command": "node", "args": [...], "env": {...}}}}

Agents without such a flag get the same servers written in their own config
syntax (TOML for Codex, settings JSON for Gemini, opencode.json for OpenCode).
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from devflow.errors import ConfigTranslationError


class McpServer(BaseModel):
    """A single stdio MCP server."""

    model_config = ConfigDict(extra="ignore")

    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class McpConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    servers: dict[str, McpServer] = Field(alias="mcpServers")


def parse_mcp_config(raw: str) -> McpConfig:
    """Validate a canonical MCP blob, failing fast with a readable message."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigTranslationError(f"Invalid MCP config JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigTranslationError(
            f"MCP config must be a JSON object, got {type(data).__name__}"
        )
    if "mcpServers" not in data:
        raise ConfigTranslationError("MCP config is missing the 'mcpServers' key")

    try:
        return McpConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigTranslationError(f"Invalid MCP config: {problems}") from e


# ---------------------------------------------------------------------------
# Codex: TOML tables under [mcp_servers.<name>]
# ---------------------------------------------------------------------------

_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


def _toml_key(key: str) -> str:
    return key if _BARE_KEY.match(key) else _toml_str(key)


def _toml_str(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes.
    return json.dumps(value, ensure_ascii=False)


def to_codex_toml(config: McpConfig) -> str:
    """Render servers as Codex ``config.toml`` tables."""
    blocks: list[str] = []
    for name, server in config.servers.items():
        table = f"mcp_servers.{_toml_key(name)}"
        lines = [
            f"[{table}]",
            f"command = {_toml_str(server.command)}",
            "args = [" + ", ".join(_toml_str(a) for a in server.args) + "]",
        ]
        if server.env:
            lines.append("")
            lines.append(f"[{table}.env]")
            lines.extend(
                f"{_toml_key(k)} = {_toml_str(v)}" for k, v in server.env.items()
            )
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


# ---------------------------------------------------------------------------
# Gemini: settings.json "mcpServers" (same per-server shape)
# ---------------------------------------------------------------------------


def to_gemini_servers(config: McpConfig) -> dict[str, Any]:
    """The value of the ``mcpServers`` key in ``.gemini/settings.json``."""
    return {
        name: {"command": s.command, "args": list(s.args), "env": dict(s.env)}
        for name, s in config.servers.items()
    }


# ---------------------------------------------------------------------------
# OpenCode: opencode.json "mcp" with a single command array
# ---------------------------------------------------------------------------


def to_opencode_config(config: McpConfig) -> dict[str, Any]:
    """A standalone ``opencode.json`` document declaring local MCP servers."""
    return {
        "$schema": "https://opencode.ai/config.json",
        "mcp": {
            name: {
                "type": "local",
                "command": [s.command, *s.args],
                "environment": dict(s.env),
                "enabled": True,
            }
            for name, s in config.servers.items()
        },
    }
