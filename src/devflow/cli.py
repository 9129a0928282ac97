"""CLI entry point for devflow."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import typer

from devflow.agent.catalog import CATALOG
from devflow.agent.request import InvocationRequest
from devflow.config import DevflowConfig
from devflow.errors import DevflowError
from devflow.runtime import AgentRuntime
from devflow.session.wire import (
    Completed,
    ProcessError,
    Started,
    StderrLine,
    StdoutLine,
    Wire,
)

app = typer.Typer(
    name="devflow",
    help="Launch, stream and cancel coding-agent CLIs.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _request_from_options(
    prompt: str,
    agent: str | None,
    cwd: str | None,
    system_prompt: str | None,
    json_schema: str | None,
    output_format: str | None,
    session_id: str | None,
    allowed_tools: list[str] | None,
    no_tools: bool,
    max_turns: int | None,
    mcp_config: Path | None,
    model: str | None,
    no_session_persistence: bool,
) -> InvocationRequest:
    if no_tools and allowed_tools:
        typer.echo("Error: --no-tools and --allowed-tool are exclusive", err=True)
        raise typer.Exit(2)

    mcp_text: str | None = None
    if mcp_config is not None:
        try:
            mcp_text = mcp_config.read_text(encoding="utf-8")
        except OSError as e:
            typer.echo(f"Error: cannot read MCP config: {e}", err=True)
            raise typer.Exit(2)

    return InvocationRequest(
        prompt=prompt,
        agent=agent,
        working_directory=str(Path(cwd).resolve()) if cwd else None,
        session_id=session_id,
        append_system_prompt=system_prompt,
        json_schema=json_schema,
        output_format=output_format,
        no_session_persistence=no_session_persistence,
        allowed_tools=[] if no_tools else (allowed_tools or None),
        max_turns=max_turns,
        mcp_config=mcp_text,
        model=model,
    )


_PROMPT = typer.Argument(help="Prompt to send to the agent.")
_AGENT = typer.Option(None, "--agent", "-a", help="Agent to run (default: from config).")
_CWD = typer.Option(None, "--cwd", "-C", help="Working directory for the agent.")
_SYSTEM = typer.Option(None, "--system-prompt", "-s", help="Text appended to the system prompt.")
_SCHEMA = typer.Option(None, "--json-schema", help="JSON schema for structured output.")
_FORMAT = typer.Option(None, "--output-format", "-f", help="Output format hint (e.g. stream-json, json, text).")
_SESSION = typer.Option(None, "--session-id", help="Session id to use.")
_TOOLS = typer.Option(None, "--allowed-tool", "-t", help="Allow this tool (repeatable).")
_NO_TOOLS = typer.Option(False, "--no-tools", help="Run with no tools at all.")
_TURNS = typer.Option(None, "--max-turns", min=0, help="Maximum agent turns.")
_MCP = typer.Option(None, "--mcp-config", exists=True, dir_okay=False, help="Canonical MCP JSON file.")
_MODEL = typer.Option(None, "--model", "-m", help="Model override.")
_NO_PERSIST = typer.Option(False, "--no-session-persistence", help="Do not save the agent session.")
_VERBOSE = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
_CONFIG = typer.Option(None, "--config", "-c", help="Config file path.")


@app.command()
def run(
    prompt: str = _PROMPT,
    agent: str | None = _AGENT,
    cwd: str | None = _CWD,
    system_prompt: str | None = _SYSTEM,
    json_schema: str | None = _SCHEMA,
    output_format: str | None = _FORMAT,
    session_id: str | None = _SESSION,
    allowed_tools: list[str] | None = _TOOLS,
    no_tools: bool = _NO_TOOLS,
    max_turns: int | None = _TURNS,
    mcp_config: Path | None = _MCP,
    model: str | None = _MODEL,
    no_session_persistence: bool = _NO_PERSIST,
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Run an agent once and stream its output. Ctrl-C cancels it."""
    setup_logging(verbose)
    config = DevflowConfig.load(config_file)
    request = _request_from_options(
        prompt, agent, cwd, system_prompt, json_schema, output_format, session_id,
        allowed_tools, no_tools, max_turns, mcp_config, model, no_session_persistence,
    )

    try:
        exit_code = asyncio.run(_run_agent(request, config))
    except DevflowError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    raise typer.Exit(exit_code if exit_code is not None else 1)


async def _run_agent(request: InvocationRequest, config: DevflowConfig) -> int | None:
    """Spawn one piped run and print its events until it completes."""
    runtime = AgentRuntime(config)
    wire = Wire()
    queue = wire.subscribe()
    loop = asyncio.get_running_loop()
    exit_code: int | None = None

    try:
        process_id = await runtime.spawn_agent(request, wire)

        def _cancel() -> None:
            typer.echo("\n[cancelling]", err=True)
            try:
                runtime.processes.kill(process_id)
            except DevflowError as e:
                typer.echo(f"[{e}]", err=True)

        loop.add_signal_handler(signal.SIGINT, _cancel)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if isinstance(event, Started):
                    typer.echo(f"[started {event.process_id}]", err=True)
                elif isinstance(event, StdoutLine):
                    typer.echo(event.line)
                elif isinstance(event, StderrLine):
                    typer.echo(event.line, err=True)
                elif isinstance(event, ProcessError):
                    typer.echo(f"ERROR: {event.message}", err=True)
                elif isinstance(event, Completed):
                    exit_code = event.exit_code
                    code_str = str(exit_code) if exit_code is not None else "?"
                    typer.echo(f"[completed code={code_str}]", err=True)
                    break
        finally:
            loop.remove_signal_handler(signal.SIGINT)
    finally:
        await runtime.shutdown()
        wire.close()

    return exit_code


@app.command()
def argv(
    prompt: str = _PROMPT,
    agent: str | None = _AGENT,
    cwd: str | None = _CWD,
    system_prompt: str | None = _SYSTEM,
    json_schema: str | None = _SCHEMA,
    output_format: str | None = _FORMAT,
    session_id: str | None = _SESSION,
    allowed_tools: list[str] | None = _TOOLS,
    no_tools: bool = _NO_TOOLS,
    max_turns: int | None = _TURNS,
    mcp_config: Path | None = _MCP,
    model: str | None = _MODEL,
    no_session_persistence: bool = _NO_PERSIST,
    config_file: str | None = _CONFIG,
) -> None:
    """Print the command a run would use, without spawning anything."""
    config = DevflowConfig.load(config_file)
    request = _request_from_options(
        prompt, agent, cwd, system_prompt, json_schema, output_format, session_id,
        allowed_tools, no_tools, max_turns, mcp_config, model, no_session_persistence,
    )
    try:
        invocation = AgentRuntime(config).plan(request)
    except DevflowError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(invocation.describe())
    for staged in invocation.files:
        typer.echo(f"  stages {staged.path} ({staged.placement}, {staged.mode})")


@app.command()
def check(
    agent: str | None = _AGENT,
    config_file: str | None = _CONFIG,
) -> None:
    """Check that an agent CLI is installed and print its version."""
    config = DevflowConfig.load(config_file)
    runtime = AgentRuntime(config)
    try:
        version = asyncio.run(runtime.check_agent_available(agent))
    except DevflowError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(version)


@app.command()
def agents() -> None:
    """List supported agents and how each optional feature is provided."""
    for spec in CATALOG.values():
        typer.echo(f"{spec.name} ({spec.binary})")
        for feature, how in spec.capabilities().items():
            typer.echo(f"  {feature:<24} {how}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
