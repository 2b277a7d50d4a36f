"""CLI tests driven through click's CliRunner."""

import json
import re
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import posix_only
from mountkeeper.cli import main
from mountkeeper import cloudwatch
from mountkeeper.config import CONFIG_FILENAME, load_global_config

WIDE = {"COLUMNS": "200"}


@pytest.fixture
def runner():
    return CliRunner()


def flat(output):
    return " ".join(output.split())


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init_writes_config_once(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as cwd:
        result = runner.invoke(main, ["init", "--sandboxfs-path", "/opt/sandboxfs"])
        assert result.exit_code == 0
        written = json.loads((Path(cwd) / CONFIG_FILENAME).read_text())
        assert written == {
            "use_sandboxfs": True,
            "sandbox_debug": False,
            "sandboxfs_path": "/opt/sandboxfs",
        }

        again = runner.invoke(main, ["init"])
        assert "already exists" in again.output


def test_init_global_updates_user_config(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as cwd:
        result = runner.invoke(main, ["init", "--global", "--sandboxfs-path", "/opt/sfs"])
        assert result.exit_code == 0, result.output
        assert "Updated" in result.output
        assert not (Path(cwd) / CONFIG_FILENAME).exists()

    saved = load_global_config()
    assert saved["use_sandboxfs"] is True
    assert saved["sandboxfs_path"] == "/opt/sfs"


def test_info_single_key(runner, tmp_path):
    out = tmp_path / "out"
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(main, ["info", "output_base", "--output-base", str(out)])
        sandbox = runner.invoke(main, ["info", "sandbox_base", "--output-base", str(out)])
    assert result.exit_code == 0
    assert result.output.strip() == str(out)
    assert sandbox.output.strip() == f"{out}/sandbox"


def test_info_rejects_unknown_key(runner):
    result = runner.invoke(main, ["info", "bogus"])
    assert result.exit_code != 0


def test_invalid_project_config_exits(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path):
        with open(CONFIG_FILENAME, "w") as f:
            f.write("{not json")
        result = runner.invoke(main, ["build", "--", "true"], env=WIDE)
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


@posix_only
def test_build_explicit_sandboxfs_not_found(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(main, [
            "build", "--use-sandboxfs", "--sandboxfs-path=/non-existent/sandboxfs",
            "--output-base", str(tmp_path / "out"), "--", "true",
        ], env=WIDE)
    assert result.exit_code == 1
    assert "Failed to initialize sandbox: Cannot run /non-existent/" in flat(result.output)


@posix_only
def test_build_with_sandboxfs(runner, tmp_path, sandboxfs_script):
    script, log = sandboxfs_script
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(main, [
            "build", "--use-sandboxfs", f"--sandboxfs-path={script}",
            "--output-base", str(tmp_path / "out"), "--", "true",
        ], env=WIDE)
    assert result.exit_code == 0, result.output
    assert "Build succeeded" in result.output
    text = log.read_text()
    assert f"ARGS: {tmp_path / 'out' / 'sandbox'}/sandboxfs" in text
    assert "Terminated" in text


@posix_only
def test_build_propagates_command_exit_code(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(main, [
            "build", "--output-base", str(tmp_path / "out"), "--", "sh", "-c", "exit 3",
        ], env=WIDE)
    assert result.exit_code == 3
    assert "Build failed" in result.output


def test_logs_without_history(runner):
    result = runner.invoke(main, ["logs"])
    assert result.exit_code == 0
    assert "No logs yet" in result.output


@posix_only
def test_logs_after_build(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path):
        runner.invoke(main, ["build", "--output-base", str(tmp_path / "out"), "--", "true"])
        result = runner.invoke(main, ["logs", "-n", "5"], env=WIDE)
    assert result.exit_code == 0
    assert "Sandbox Log" in result.output
    assert "build" in result.output


@posix_only
def test_shell_keeps_debug_sandbox_between_builds(runner, tmp_path, sandboxfs_script):
    script, log = sandboxfs_script
    build_line = f"build --use-sandboxfs --sandbox-debug --sandboxfs-path {script} -- true"
    session = "\n".join([build_line, build_line, "status", "exit"]) + "\n"

    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(
            main, ["shell", "--output-base", str(tmp_path / "out")], input=session, env=WIDE,
        )

    assert result.exit_code == 0, result.output
    assert result.output.count("Build succeeded") == 2
    assert "active" in result.output
    assert "CloudWatch tracing off" in result.output
    pids = set(re.findall(r"sandboxfs pid (\d+)", result.output))
    assert len(pids) == 1, "debug builds in one shell should share a sandboxfs process"
    assert "Terminated" in log.read_text(), "exiting the shell must tear the sandbox down"


def test_shell_reports_bad_input(runner, tmp_path):
    session = "frobnicate\nbuild --no-such-flag\nexit\n"
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(
            main, ["shell", "--output-base", str(tmp_path / "out")], input=session, env=WIDE,
        )
    assert result.exit_code == 0
    assert "Unknown command: frobnicate" in result.output
    assert "no such option" in result.output.lower()


class RecordingLogs:

    def __init__(self):
        self.events = []

    def put_log_events(self, **kwargs):
        self.events.extend(kwargs["logEvents"])


def test_shell_status_reports_tracing(runner, tmp_path, monkeypatch):
    logs_client = RecordingLogs()
    monkeypatch.setattr(cloudwatch, "_client", logs_client)
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(
            main, ["shell", "--output-base", str(tmp_path / "out")],
            input="status\nexit\n", env=WIDE,
        )
    assert result.exit_code == 0, result.output
    assert "CloudWatch tracing on" in result.output
    assert "No sandboxfs process" in result.output
    assert logs_client.events, "shutdown should emit a teardown span"
