"""Exception hierarchy for the agent process core."""

from __future__ import annotations


class DevflowError(Exception):
    """Base class for all devflow errors."""


class SpawnError(DevflowError):
    """The agent binary is missing or could not be executed."""


class ConfigTranslationError(DevflowError):
    """An MCP configuration blob could not be translated for an agent."""


class TempFileError(DevflowError):
    """A scratch or working-directory file could not be staged."""


class NotFoundError(DevflowError):
    """No live process or PTY session is registered under the given id."""


class AlreadySignaledError(DevflowError):
    """The instance was already told to stop, or exited before the signal."""


class AgentUnavailableError(DevflowError):
    """The agent CLI exists but reported an error for its version check."""
