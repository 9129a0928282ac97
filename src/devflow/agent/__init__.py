"""Agent catalog and invocation building."""

from devflow.agent.builder import Invocation, StagedFile, build, build_interactive
from devflow.agent.catalog import CATALOG, DEFAULT_AGENT, Agent, AgentSpec, Feature, resolve
from devflow.agent.request import InvocationRequest, PtyRequest

__all__ = [
    "Agent",
    "AgentSpec",
    "CATALOG",
    "DEFAULT_AGENT",
    "Feature",
    "Invocation",
    "InvocationRequest",
    "PtyRequest",
    "StagedFile",
    "build",
    "build_interactive",
    "resolve",
]
