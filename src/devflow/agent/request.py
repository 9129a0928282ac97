"""Vendor-neutral request models for piped and interactive agent runs."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Request(BaseModel):
    # Accept both the camelCase shape sent by the desktop front end and
    # plain snake_case from Python callers.
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class InvocationRequest(_Request):
    """One piped agent run."""

    prompt: str
    agent: str | None = Field(
        default=None, validation_alias=AliasChoices("agent", "agentName")
    )
    working_directory: str | None = None
    session_id: str | None = None
    linkage_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("linkageId", "stageExecutionId", "linkage_id"),
        description="Opaque caller correlation token, passed through untouched",
    )
    append_system_prompt: str | None = None
    json_schema: str | None = None
    output_format: str | None = None
    no_session_persistence: bool = False
    allowed_tools: list[str] | None = Field(
        default=None,
        description="None = unrestricted, [] = no tools at all, else the exact set",
    )
    max_turns: int | None = Field(default=None, ge=0)
    mcp_config: str | None = Field(
        default=None, description="Canonical MCP JSON ({'mcpServers': {...}})"
    )
    model: str | None = None


class PtyRequest(_Request):
    """One interactive terminal session."""

    agent: str | None = None
    working_directory: str | None = None
    append_system_prompt: str | None = None
    cols: int | None = Field(default=None, ge=1)
    rows: int | None = Field(default=None, ge=1)
