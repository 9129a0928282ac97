"""Agent catalog — the supported agent CLIs and what each one can do natively.

Every agent is one row in ``CATALOG``. The invocation builder only ever asks
a row two questions: "do you have a native flag for this feature?" and, if
not, "is there a file or environment fallback?". Adding an agent is a data
change here, not a new branch in the builder.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

logger = logging.getLogger(__name__)


class Agent(enum.StrEnum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    AMP = "amp"
    OPENCODE = "opencode"


DEFAULT_AGENT = Agent.CLAUDE


class Feature(enum.StrEnum):
    """Optional request features an agent may or may not expose."""

    SESSION_ID = "session_id"
    SYSTEM_PROMPT = "system_prompt"
    JSON_SCHEMA = "json_schema"
    TOOL_ALLOWLIST = "tool_allowlist"
    MAX_TURNS = "max_turns"
    MCP_CONFIG = "mcp_config"
    VERBOSE_STREAMING = "verbose_streaming"
    NO_SESSION_PERSISTENCE = "no_session_persistence"
    MODEL = "model"


class Fallback(enum.StrEnum):
    """How a feature is bridged when the agent has no flag for it."""

    INSTRUCTIONS_FILE = "instructions_file"  # AGENTS.md in the working dir
    SYSTEM_PROMPT_ENV_FILE = "system_prompt_env_file"  # GEMINI_SYSTEM_MD
    SCHEMA_FILE = "schema_file"  # --output-schema <scratch file>
    CODEX_HOME_TOML = "codex_home_toml"  # CODEX_HOME/config.toml
    GEMINI_SETTINGS = "gemini_settings"  # .gemini/settings.json in working dir
    OPENCODE_CONFIG = "opencode_config"  # OPENCODE_CONFIG=<scratch json>


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(d)


@dataclass(frozen=True)
class AgentSpec:
    """Immutable description of one agent CLI."""

    agent: Agent
    binary: str
    display_name: str
    exec_args: tuple[str, ...] = ()
    prompt_flag: str | None = None  # None: prompt is the last positional arg
    auto_approve_flag: str | None = None
    auto_approve_env: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    version_flag: str = "--version"
    default_output_format: str | None = None
    output_format_flag: str | None = None  # takes the format as its value
    json_output_args: tuple[str, ...] = ()  # switch used for json-ish formats
    json_output_formats: frozenset[str] = frozenset({"json", "stream-json"})
    flags: Mapping[Feature, str] = field(default_factory=lambda: _frozen({}))
    fallbacks: Mapping[Feature, Fallback] = field(
        default_factory=lambda: _frozen({})
    )

    @property
    def name(self) -> str:
        return self.agent.value

    def supports(self, feature: Feature) -> bool:
        """True when the CLI has a native flag for ``feature``."""
        return feature in self.flags

    def flag(self, feature: Feature) -> str:
        return self.flags[feature]

    def fallback(self, feature: Feature) -> Fallback | None:
        return self.fallbacks.get(feature)

    def capabilities(self) -> dict[str, str]:
        """Feature -> "flag" / fallback name / "-", for display."""
        out: dict[str, str] = {}
        for feature in Feature:
            if feature in self.flags:
                out[feature.value] = self.flags[feature]
            elif feature in self.fallbacks:
                out[feature.value] = f"({self.fallbacks[feature].value})"
            else:
                out[feature.value] = "-"
        return out


CATALOG: Mapping[Agent, AgentSpec] = _frozen(
    {
        Agent.CLAUDE: AgentSpec(
            agent=Agent.CLAUDE,
            binary="claude",
            display_name="Claude",
            prompt_flag="-p",
            auto_approve_flag="--dangerously-skip-permissions",
            default_output_format="stream-json",
            output_format_flag="--output-format",
            flags=_frozen(
                {
                    Feature.SESSION_ID: "--session-id",
                    Feature.SYSTEM_PROMPT: "--append-system-prompt",
                    Feature.JSON_SCHEMA: "--json-schema",
                    Feature.TOOL_ALLOWLIST: "--allowedTools",
                    Feature.MAX_TURNS: "--max-turns",
                    Feature.MCP_CONFIG: "--mcp-config",
                    Feature.VERBOSE_STREAMING: "--verbose",
                    Feature.NO_SESSION_PERSISTENCE: "--no-session-persistence",
                    Feature.MODEL: "--model",
                }
            ),
        ),
        Agent.CODEX: AgentSpec(
            agent=Agent.CODEX,
            binary="codex",
            display_name="Codex",
            exec_args=("exec", "--skip-git-repo-check"),
            auto_approve_flag="--dangerously-bypass-approvals-and-sandbox",
            default_output_format="stream-json",
            json_output_args=("--json",),
            flags=_frozen({Feature.MODEL: "--model"}),
            fallbacks=_frozen(
                {
                    Feature.SYSTEM_PROMPT: Fallback.INSTRUCTIONS_FILE,
                    Feature.JSON_SCHEMA: Fallback.SCHEMA_FILE,
                    Feature.MCP_CONFIG: Fallback.CODEX_HOME_TOML,
                }
            ),
        ),
        Agent.GEMINI: AgentSpec(
            agent=Agent.GEMINI,
            binary="gemini",
            display_name="Gemini",
            prompt_flag="-p",
            auto_approve_flag="--yolo",
            default_output_format="stream-json",
            output_format_flag="--output-format",
            flags=_frozen({Feature.MODEL: "--model"}),
            fallbacks=_frozen(
                {
                    Feature.SYSTEM_PROMPT: Fallback.SYSTEM_PROMPT_ENV_FILE,
                    Feature.MCP_CONFIG: Fallback.GEMINI_SETTINGS,
                }
            ),
        ),
        Agent.AMP: AgentSpec(
            agent=Agent.AMP,
            binary="amp",
            display_name="AMP",
            prompt_flag="-x",
            auto_approve_flag="--dangerously-allow-all",
            default_output_format="stream-json",
            json_output_args=("--stream-json",),
            json_output_formats=frozenset({"stream-json"}),
        ),
        Agent.OPENCODE: AgentSpec(
            agent=Agent.OPENCODE,
            binary="opencode",
            display_name="OpenCode",
            exec_args=("run",),
            # OpenCode has no approval flag; permissions come from the env.
            auto_approve_env=_frozen(
                {
                    "OPENCODE_PERMISSION": (
                        '{"edit":"allow","bash":"allow","webfetch":"allow"}'
                    )
                }
            ),
            default_output_format="json",
            json_output_args=("--format", "json"),
            flags=_frozen({Feature.MODEL: "--model"}),
            fallbacks=_frozen({Feature.MCP_CONFIG: Fallback.OPENCODE_CONFIG}),
        ),
    }
)


def names() -> list[str]:
    """All known agent identifiers, default first."""
    return [a.value for a in Agent]


def resolve(identifier: str | None, default: Agent | str = DEFAULT_AGENT) -> AgentSpec:
    """Look up an agent by identifier.

    Absent or unknown identifiers resolve to ``default``; unknown ones are
    logged so a typo in a caller's settings does not go unnoticed.
    """
    fallback = _coerce(default) or DEFAULT_AGENT
    if identifier is None or not identifier.strip():
        return CATALOG[fallback]

    agent = _coerce(identifier)
    if agent is None:
        logger.warning(
            "Unknown agent %r, falling back to %s", identifier, fallback.value
        )
        return CATALOG[fallback]
    return CATALOG[agent]


def _coerce(value: Agent | str) -> Agent | None:
    if isinstance(value, Agent):
        return value
    try:
        return Agent(value.strip().lower())
    except ValueError:
        return None
