"""End-to-end tests for devflow.runtime.AgentRuntime with fake agent CLIs on PATH."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from devflow.errors import (
    AgentUnavailableError,
    AlreadySignaledError,
    ConfigTranslationError,
    NotFoundError,
    SpawnError,
)
from devflow.runtime import AgentRuntime, ProcessInfo
from devflow.session.wire import Completed, PtyExited, StdoutLine

PRINT_ARGS = 'for a in "$@"; do echo "$a"; done\n'

MCP = json.dumps({"mcpServers": {"x": {"command": "node", "args": ["a"], "env": {"K": "V"}}}})


@pytest.fixture
async def runtime(config):
    rt = AgentRuntime(config)
    rt.start()
    yield rt
    await rt.shutdown(5)


def _lines(recorder) -> list[str]:
    return [e.line for e in recorder.of(StdoutLine)]


def _leftovers(runtime: AgentRuntime) -> list[Path]:
    tmp = runtime.config.tmp_dir
    return list(tmp.iterdir()) if tmp.exists() else []


async def _until_completed(events: list, timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not (events and isinstance(events[-1], Completed)):
            await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# spawn_agent
# ---------------------------------------------------------------------------


class TestSpawnAgent:
    async def test_default_agent_argv(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", PRINT_ARGS)
        pid = await runtime.spawn_agent({"prompt": "hi"}, recorder)
        await recorder.wait()

        recorder.assert_well_ordered()
        assert _lines(recorder) == [
            "--dangerously-skip-permissions",
            "-p",
            "hi",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        assert recorder.terminal == Completed(process_id=pid, exit_code=0)

    async def test_camel_case_request(self, runtime, fake_bin, recorder, workdir) -> None:
        fake_bin("codex", "pwd\n" + PRINT_ARGS)
        await runtime.spawn_agent(
            {
                "prompt": "fix it",
                "agentName": "codex",
                "workingDirectory": str(workdir),
                "model": "o3",
            },
            recorder,
        )
        await recorder.wait()
        lines = _lines(recorder)
        assert Path(lines[0]).resolve() == workdir.resolve()
        assert lines[1:3] == ["exec", "--skip-git-repo-check"]
        assert lines[-3:] == ["--model", "o3", "fix it"]

    async def test_unknown_agent_falls_back(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", "echo I am claude\n")
        await runtime.spawn_agent({"prompt": "hi", "agent": "cursor"}, recorder)
        await recorder.wait()
        assert _lines(recorder) == ["I am claude"]

    async def test_missing_binary(self, runtime, recorder, tmp_path, monkeypatch) -> None:
        empty = tmp_path / "empty-bin"
        empty.mkdir()
        monkeypatch.setenv("PATH", str(empty))
        with pytest.raises(SpawnError):
            await runtime.spawn_agent({"prompt": "hi"}, recorder)
        assert recorder.events == []
        assert await runtime.list_processes() == []
        assert _leftovers(runtime) == []

    async def test_malformed_mcp_spawns_nothing(self, runtime, fake_bin, recorder, workdir) -> None:
        marker = workdir / "ran"
        fake_bin("gemini", f"touch '{marker}'\n")
        with pytest.raises(ConfigTranslationError):
            await runtime.spawn_agent(
                {"prompt": "hi", "agent": "gemini", "mcpConfig": "{nope"}, recorder
            )
        await asyncio.sleep(0.1)
        assert not marker.exists()
        assert recorder.events == []
        assert await runtime.list_processes() == []

    async def test_nul_byte_restores_workdir(self, runtime, fake_bin, recorder, workdir) -> None:
        agents_md = workdir / "AGENTS.md"
        agents_md.write_text("# House rules\n")
        fake_bin("codex", "true\n")
        with pytest.raises(SpawnError):
            await runtime.spawn_agent(
                {
                    "prompt": "a\x00b",
                    "agent": "codex",
                    "workingDirectory": str(workdir),
                    "appendSystemPrompt": "be brief",
                },
                recorder,
            )
        assert recorder.events == []
        assert await runtime.list_processes() == []
        assert agents_md.read_text() == "# House rules\n"
        assert _leftovers(runtime) == []


# ---------------------------------------------------------------------------
# Staged files are visible during the run and gone after it
# ---------------------------------------------------------------------------


class TestStagedFiles:
    async def test_gemini_mcp_and_system_prompt(
        self, runtime, fake_bin, recorder, workdir
    ) -> None:
        fake_bin("gemini", 'cat .gemini/settings.json\necho\ncat "$GEMINI_SYSTEM_MD"\n')
        await runtime.spawn_agent(
            {
                "prompt": "hi",
                "agent": "gemini",
                "workingDirectory": str(workdir),
                "mcpConfig": MCP,
                "appendSystemPrompt": "be brief",
            },
            recorder,
        )
        await recorder.wait()

        out = "\n".join(_lines(recorder))
        assert '"mcpServers"' in out
        assert '"node"' in out
        assert "be brief" in out
        assert recorder.terminal.exit_code == 0

        assert not (workdir / ".gemini").exists()
        assert _leftovers(runtime) == []

    async def test_codex_instructions_restored(
        self, runtime, fake_bin, recorder, workdir
    ) -> None:
        agents_md = workdir / "AGENTS.md"
        agents_md.write_text("# House rules\n")
        fake_bin("codex", "cat AGENTS.md\n")
        await runtime.spawn_agent(
            {
                "prompt": "hi",
                "agent": "codex",
                "workingDirectory": str(workdir),
                "appendSystemPrompt": "be brief",
            },
            recorder,
        )
        await recorder.wait()

        assert _lines(recorder) == ["# House rules", "", "be brief"]
        assert agents_md.read_text() == "# House rules\n"

    async def test_codex_home_redirected(
        self, runtime, fake_bin, recorder, tmp_path, monkeypatch
    ) -> None:
        user_home = tmp_path / "user-codex"
        user_home.mkdir()
        (user_home / "auth.json").write_text('{"token": "t"}')
        monkeypatch.setenv("CODEX_HOME", str(user_home))
        fake_bin("codex", 'cat "$CODEX_HOME/config.toml"\ncat "$CODEX_HOME/auth.json"\necho\n')

        await runtime.spawn_agent(
            {"prompt": "hi", "agent": "codex", "mcpConfig": MCP}, recorder
        )
        await recorder.wait()

        out = _lines(recorder)
        assert "[mcp_servers.x]" in out
        assert '{"token": "t"}' in out
        assert (user_home / "auth.json").exists()

    async def test_overlapping_codex_runs_restore_instructions(
        self, runtime, fake_bin, workdir
    ) -> None:
        agents_md = workdir / "AGENTS.md"
        agents_md.write_text("# House rules\n")
        fake_bin("codex", "exec sleep 30\n")

        def request(text: str) -> dict:
            return {
                "prompt": "hi",
                "agent": "codex",
                "workingDirectory": str(workdir),
                "appendSystemPrompt": text,
            }

        first: list = []
        second: list = []
        a = await runtime.spawn_agent(request("FIRST"), first.append)
        b = await runtime.spawn_agent(request("SECOND"), second.append)
        assert agents_md.read_text() == "# House rules\n\nFIRST\n\nSECOND"

        await runtime.kill_process(a)
        await _until_completed(first)
        assert agents_md.read_text() == "# House rules\n\nSECOND"

        await runtime.kill_process(b)
        await _until_completed(second)
        assert agents_md.read_text() == "# House rules\n"
        assert _leftovers(runtime) == []


# ---------------------------------------------------------------------------
# kill / list
# ---------------------------------------------------------------------------


class TestKillAndList:
    async def test_list_detailed_and_kill(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", "exec sleep 30\n")
        pid = await runtime.spawn_agent(
            {"prompt": "hi", "stageExecutionId": "stage-1"}, recorder
        )

        assert await runtime.list_processes() == [pid]
        detailed = await runtime.list_processes_detailed()
        assert detailed == [ProcessInfo(process_id=pid, stage_execution_id="stage-1")]
        assert detailed[0].model_dump(by_alias=True) == {
            "processId": pid,
            "stageExecutionId": "stage-1",
        }

        await runtime.kill_process(pid)
        with pytest.raises(AlreadySignaledError):
            await runtime.kill_process(pid)
        await recorder.wait(5)
        assert recorder.terminal.exit_code is None

        await runtime._supervisor.join(5)
        assert await runtime.list_processes() == []
        with pytest.raises(NotFoundError):
            await runtime.kill_process(pid)

    async def test_kill_unknown(self, runtime) -> None:
        with pytest.raises(NotFoundError, match="Process not found"):
            await runtime.kill_process("nope")

    async def test_shutdown_kills_everything(self, config, fake_bin) -> None:
        fake_bin("claude", "exec sleep 30\n")
        rt = AgentRuntime(config)
        rt.start()
        piped: list = []
        interactive: list = []
        await rt.spawn_agent({"prompt": "hi"}, piped.append)
        await rt.spawn_pty(None, interactive.append)

        await rt.shutdown(5)
        assert isinstance(piped[-1], Completed)
        assert isinstance(interactive[-1], PtyExited)
        assert await rt.list_processes() == []
        assert len(rt.ptys) == 0

    async def test_shutdown_timeout_reaches_pty_cleanup(self, config, monkeypatch) -> None:
        rt = AgentRuntime(config)
        seen: list = []

        async def cleanup(timeout=None) -> None:
            seen.append(timeout)

        monkeypatch.setattr(rt._pty_manager, "cleanup", cleanup)
        await rt.shutdown(0.5)
        assert seen == [0.5]


# ---------------------------------------------------------------------------
# check_agent_available
# ---------------------------------------------------------------------------


class TestCheckAgent:
    async def test_version(self, runtime, fake_bin) -> None:
        fake_bin("gemini", 'if [ "$1" = "--version" ]; then echo "0.9.1"; fi\n')
        assert await runtime.check_agent_available("gemini") == "0.9.1"

    async def test_non_zero_exit(self, runtime, fake_bin) -> None:
        fake_bin("amp", "echo boom >&2; exit 2\n")
        with pytest.raises(AgentUnavailableError, match="Agent CLI returned error"):
            await runtime.check_agent_available("amp")

    async def test_not_installed(self, runtime, tmp_path, monkeypatch) -> None:
        empty = tmp_path / "empty-bin"
        empty.mkdir()
        monkeypatch.setenv("PATH", str(empty))
        with pytest.raises(SpawnError, match="Agent CLI not found"):
            await runtime.check_agent_available("opencode")


# ---------------------------------------------------------------------------
# PTY sessions
# ---------------------------------------------------------------------------


class TestPty:
    async def test_interactive_session(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", 'echo "args:$*"\nread line\necho "got:$line"\n')
        sid = await runtime.spawn_pty({"appendSystemPrompt": "be brief"}, recorder)
        await recorder.wait_for_text("args:")
        await runtime.write_to_pty(sid, "ping\n")
        await recorder.wait()

        text = recorder.text()
        assert "args:--dangerously-skip-permissions --append-system-prompt be brief" in text
        assert "got:ping" in text
        assert recorder.terminal == PtyExited(id=sid, exit_code=0)

    async def test_requested_size(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", "stty size\n")
        await runtime.spawn_pty({"cols": 132, "rows": 50}, recorder)
        await recorder.wait()
        assert "50 132" in recorder.text()

    async def test_resize_bounds(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", "exec sleep 30\n")
        sid = await runtime.spawn_pty(None, recorder)
        with pytest.raises(ValueError):
            await runtime.resize_pty(sid, 0, 24)
        with pytest.raises(ValueError):
            await runtime.resize_pty(sid, 80, 70000)
        await runtime.resize_pty(sid, 100, 40)

        await runtime.kill_pty(sid)
        with pytest.raises(AlreadySignaledError):
            await runtime.kill_pty(sid)
        await recorder.wait(5)
        assert recorder.terminal.exit_code is None

    async def test_unknown_session(self, runtime) -> None:
        with pytest.raises(NotFoundError, match="PTY session not found"):
            await runtime.write_to_pty("nope", "x")
        with pytest.raises(NotFoundError):
            await runtime.resize_pty("nope", 80, 24)
        with pytest.raises(NotFoundError):
            await runtime.kill_pty("nope")

    async def test_nul_byte_in_system_prompt(self, runtime, fake_bin, recorder) -> None:
        fake_bin("claude", "true\n")
        with pytest.raises(SpawnError):
            await runtime.spawn_pty({"appendSystemPrompt": "a\x00b"}, recorder)
        assert recorder.events == []
        assert len(runtime.ptys) == 0
        assert _leftovers(runtime) == []
