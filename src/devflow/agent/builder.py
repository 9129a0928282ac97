"""Turn a request plus an agent row into argv, env, cwd and staged files.

Building is pure: files the agent needs (instructions, schemas, MCP
settings) are described as ``StagedFile`` entries and only written later by
``TempContext.materialize``. Paths inside the scratch directory are computed
here, so ``scratch_dir`` does not have to exist yet.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from devflow.agent.catalog import AgentSpec, Fallback, Feature
from devflow.agent.mcp import (
    parse_mcp_config,
    to_codex_toml,
    to_gemini_servers,
    to_opencode_config,
)
from devflow.agent.request import InvocationRequest, PtyRequest

logger = logging.getLogger(__name__)

# An explicitly empty allowlist must mean "no tools", but --allowedTools has
# no deny-all form. Passing a tool name that cannot exist restricts the CLI
# to zero real tools. This relies on the CLI ignoring unknown names and has
# to be rechecked whenever the CLI changes.
NO_TOOLS_SENTINEL = "_none_"


class Placement(enum.StrEnum):
    SCRATCH = "scratch"  # inside the per-invocation scratch dir
    WORKDIR = "workdir"  # dropped into the agent's working directory


class WriteMode(enum.StrEnum):
    REPLACE = "replace"
    APPEND = "append"  # append to an existing file's content
    MERGE_JSON = "merge_json"  # merge one top-level key into an existing object


@dataclass
class StagedFile:
    """A file to materialize before spawning."""

    path: Path
    content: str = ""
    placement: Placement = Placement.SCRATCH
    mode: WriteMode = WriteMode.REPLACE
    merge_key: str | None = None
    copy_from: Path | None = None  # copied verbatim; skipped if missing


@dataclass
class Invocation:
    """Everything needed to spawn one agent process."""

    spec: AgentSpec
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    files: list[StagedFile] = field(default_factory=list)

    def describe(self) -> str:
        env = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(self.env.items()))
        cmd = shlex.join(self.argv)
        return f"{env} {cmd}" if env else cmd


class _Staging:
    """Mutable accumulator shared by the per-feature steps."""

    def __init__(self, spec: AgentSpec, scratch_dir: Path, cwd: str | None) -> None:
        self.spec = spec
        self.scratch_dir = Path(scratch_dir)
        self.cwd = cwd
        self.workdir = Path(cwd) if cwd else Path(os.getcwd())
        self.argv: list[str] = [spec.binary]
        self.env: dict[str, str] = dict(spec.auto_approve_env)
        self.files: list[StagedFile] = []

    def native(self, feature: Feature, *values: str) -> None:
        flag = self.spec.flag(feature)
        if values:
            for v in values:
                self.argv.extend([flag, v])
        else:
            self.argv.append(flag)

    def drop(self, feature: Feature) -> None:
        logger.debug(
            "%s has no support for %s, dropping it", self.spec.display_name, feature
        )

    def scratch_file(self, name: str, content: str) -> Path:
        path = self.scratch_dir / name
        self.files.append(StagedFile(path=path, content=content))
        return path

    def finish(self) -> Invocation:
        return Invocation(
            spec=self.spec,
            argv=self.argv,
            env=self.env,
            cwd=self.cwd,
            files=self.files,
        )


def build(request: InvocationRequest, spec: AgentSpec, scratch_dir: Path) -> Invocation:
    """Translate a piped run request into a concrete command for ``spec``.

    Raises:
        ConfigTranslationError: ``mcp_config`` is malformed and the agent
            needs it translated.
    """
    st = _Staging(spec, scratch_dir, request.working_directory)
    st.argv.extend(spec.exec_args)
    if spec.auto_approve_flag:
        st.argv.append(spec.auto_approve_flag)
    if spec.prompt_flag:
        st.argv.extend([spec.prompt_flag, request.prompt])

    _output_format(st, request.output_format)

    if request.session_id is not None:
        if spec.supports(Feature.SESSION_ID):
            st.native(Feature.SESSION_ID, request.session_id)
        else:
            st.drop(Feature.SESSION_ID)

    if request.append_system_prompt is not None:
        _system_prompt(st, request.append_system_prompt)

    if request.json_schema is not None:
        _json_schema(st, request.json_schema)

    if request.no_session_persistence:
        if spec.supports(Feature.NO_SESSION_PERSISTENCE):
            st.native(Feature.NO_SESSION_PERSISTENCE)
        else:
            st.drop(Feature.NO_SESSION_PERSISTENCE)

    if request.allowed_tools is not None:
        if spec.supports(Feature.TOOL_ALLOWLIST):
            st.native(
                Feature.TOOL_ALLOWLIST, *(request.allowed_tools or [NO_TOOLS_SENTINEL])
            )
        else:
            st.drop(Feature.TOOL_ALLOWLIST)

    if request.max_turns is not None:
        if spec.supports(Feature.MAX_TURNS):
            st.native(Feature.MAX_TURNS, str(request.max_turns))
        else:
            st.drop(Feature.MAX_TURNS)

    if request.mcp_config is not None:
        _mcp_config(st, request.mcp_config)

    if request.model is not None:
        if spec.supports(Feature.MODEL):
            st.native(Feature.MODEL, request.model)
        else:
            st.drop(Feature.MODEL)

    if not spec.prompt_flag:
        st.argv.append(request.prompt)

    return st.finish()


def build_interactive(
    request: PtyRequest, spec: AgentSpec, scratch_dir: Path
) -> Invocation:
    """Command for an interactive terminal session (no prompt, no format)."""
    st = _Staging(spec, scratch_dir, request.working_directory)
    if spec.auto_approve_flag:
        st.argv.append(spec.auto_approve_flag)
    if request.append_system_prompt is not None:
        _system_prompt(st, request.append_system_prompt)
    return st.finish()


def _output_format(st: _Staging, requested: str | None) -> None:
    spec = st.spec
    fmt = requested or spec.default_output_format
    if not fmt:
        return
    if spec.output_format_flag:
        st.argv.extend([spec.output_format_flag, fmt])
    elif spec.json_output_args and fmt in spec.json_output_formats:
        st.argv.extend(spec.json_output_args)
    if fmt == "stream-json" and spec.supports(Feature.VERBOSE_STREAMING):
        st.native(Feature.VERBOSE_STREAMING)


def _system_prompt(st: _Staging, text: str) -> None:
    spec = st.spec
    if spec.supports(Feature.SYSTEM_PROMPT):
        st.native(Feature.SYSTEM_PROMPT, text)
        return

    fallback = spec.fallback(Feature.SYSTEM_PROMPT)
    if fallback is Fallback.INSTRUCTIONS_FILE:
        st.files.append(
            StagedFile(
                path=st.workdir / "AGENTS.md",
                content=text,
                placement=Placement.WORKDIR,
                mode=WriteMode.APPEND,
            )
        )
    elif fallback is Fallback.SYSTEM_PROMPT_ENV_FILE:
        path = st.scratch_file("system.md", text)
        st.env["GEMINI_SYSTEM_MD"] = str(path)
    else:
        st.drop(Feature.SYSTEM_PROMPT)


def _json_schema(st: _Staging, schema: str) -> None:
    spec = st.spec
    if spec.supports(Feature.JSON_SCHEMA):
        st.native(Feature.JSON_SCHEMA, schema)
    elif spec.fallback(Feature.JSON_SCHEMA) is Fallback.SCHEMA_FILE:
        path = st.scratch_file("output-schema.json", schema)
        st.argv.extend(["--output-schema", str(path)])
    else:
        st.drop(Feature.JSON_SCHEMA)


def _mcp_config(st: _Staging, raw: str) -> None:
    spec = st.spec
    if spec.supports(Feature.MCP_CONFIG):
        st.native(Feature.MCP_CONFIG, raw)
        return

    fallback = spec.fallback(Feature.MCP_CONFIG)
    if fallback is None:
        st.drop(Feature.MCP_CONFIG)
        return

    config = parse_mcp_config(raw)

    if fallback is Fallback.CODEX_HOME_TOML:
        home = st.scratch_dir / "codex-home"
        st.files.append(StagedFile(path=home / "config.toml", content=to_codex_toml(config)))
        # Keep the user's login working under the redirected CODEX_HOME.
        st.files.append(
            StagedFile(path=home / "auth.json", copy_from=_codex_home() / "auth.json")
        )
        st.env["CODEX_HOME"] = str(home)
    elif fallback is Fallback.GEMINI_SETTINGS:
        st.files.append(
            StagedFile(
                path=st.workdir / ".gemini" / "settings.json",
                content=json.dumps(to_gemini_servers(config), indent=2),
                placement=Placement.WORKDIR,
                mode=WriteMode.MERGE_JSON,
                merge_key="mcpServers",
            )
        )
    elif fallback is Fallback.OPENCODE_CONFIG:
        path = st.scratch_file(
            "opencode.json", json.dumps(to_opencode_config(config), indent=2)
        )
        st.env["OPENCODE_CONFIG"] = str(path)


def _codex_home() -> Path:
    env_home = os.environ.get("CODEX_HOME")
    return Path(env_home) if env_home else Path.home() / ".codex"
