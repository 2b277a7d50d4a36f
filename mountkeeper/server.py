import atexit
import os
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from rich.console import Console

from mountkeeper import cloudwatch
from mountkeeper.config import configuration_from, default_output_base, load_config
from mountkeeper.errors import SandboxError, UnexpectedTermination, format_diagnostic
from mountkeeper.lifecycle import SandboxLifecycleController
from mountkeeper.log import write_log
from mountkeeper.resolver import default_search_dirs
from mountkeeper.sandbox.process import ProcessSupervisor
from mountkeeper.tracing import StageTimer

# Environment variable through which command actions learn the mount path.
MOUNT_ENV_VAR = "MOUNTKEEPER_SANDBOXFS_MOUNT"


@dataclass
class BuildResult:
    success: bool
    exit_code: int = 0
    diagnostics: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    pid: int | None = None
    mount_path: Path | None = None
    elapsed: float = 0.0


def command_action(command, cwd=None, env=None):
    """Wrap a shell-free command line as a build action.

    The command sees the mount path in $MOUNTKEEPER_SANDBOXFS_MOUNT (empty
    when sandboxfs is disabled).
    """
    def _run(mount_path):
        action_env = {**os.environ, **(env or {})}
        action_env[MOUNT_ENV_VAR] = str(mount_path) if mount_path else ""
        try:
            return subprocess.run(list(command), cwd=cwd, env=action_env).returncode
        except FileNotFoundError:
            return 127
    return _run


class BuildServer:
    """A long-lived build server owning at most one sandboxfs process.

    Mirrors a build tool's server process: PATH is captured once at startup, the
    sandbox base lives under the output base, and the sandboxfs mount may
    survive from one build to the next when debug mode asks for it. shutdown()
    runs at interpreter exit and always tears the sandbox down.

    Several servers may share an output base (a `build` next to a running
    `shell`). Stale mount dirs are only swept by a server that finds no other
    server holding the sandbox base; see MountPointManager.claim().
    """

    def __init__(self, output_base=None, config=None, search_dirs=None, spawn=None,
                 console=None):
        self.config = config if config is not None else load_config()
        base = output_base or self.config.get("output_base") or default_output_base()
        self.output_base = Path(base).absolute()
        self.sandbox_base = self.output_base / "sandbox"
        self.search_dirs = list(search_dirs) if search_dirs is not None else default_search_dirs()
        self.console = console or Console()
        self.trace_id = uuid.uuid4().hex[:8]
        self.builds = 0
        self._closed = False

        log_stream = f"{datetime.now().strftime('%Y/%m/%d')}/{self.trace_id}"
        cloudwatch.init(self.config.get("cloudwatch_log_group", ""), log_stream)

        supervisor = ProcessSupervisor(spawn=spawn, trace_id=self.trace_id)
        self.controller = SandboxLifecycleController(
            self.sandbox_base, self.search_dirs, supervisor=supervisor,
            trace_id=self.trace_id,
        )
        swept = self.controller.mounts.claim()
        if swept is None:
            write_log({"event": "sweep_skipped", "sandbox_base": self.sandbox_base},
                      trace_id=self.trace_id)
        for failure in swept or ():
            self.console.print(f"[yellow]Warning: {failure}[/yellow]")
        atexit.register(self.shutdown)

    @property
    def sandbox(self):
        """The sandboxfs process currently held by the server, if any."""
        return self.controller.current

    def configuration(self, **options):
        return configuration_from(self.config, **options)

    def build(self, actions, **options):
        """Run `actions` (callables taking the mount path) as one build.

        Options override the config file: use_sandboxfs, sandboxfs_path,
        sandbox_debug. Stops at the first action with a non-zero exit code.
        """
        if self._closed:
            raise RuntimeError("build server has been shut down")

        config = self.configuration(**options)
        timer = StageTimer()
        self.builds += 1
        result = BuildResult(success=True)

        if not config.enabled:
            result.exit_code = _run_actions(actions, None)
            result.success = result.exit_code == 0
            return self._finish(result, timer, config)

        controller = self.controller
        try:
            with controller.build(config) as process:
                result.pid = process.pid
                result.mount_path = process.mount_path
                cloudwatch.emit(self.trace_id, "sandbox", controller.last_decision.value,
                                pid=process.pid, mount_path=process.mount_path)
                elapsed = timer.mark("launch")
                cloudwatch.emit(self.trace_id, "stage", "launch", elapsed_ms=elapsed * 1000)

                result.exit_code = _run_actions(
                    actions, process.mount_path,
                    after_each=lambda: controller.supervisor.acknowledge(
                        process, config.handshake_timeout),
                )
                result.success = result.exit_code == 0
        except UnexpectedTermination as e:
            diagnostic = format_diagnostic(e)
            self.console.print(f"[bold red]{diagnostic}[/bold red]")
            cloudwatch.emit(self.trace_id, "sandbox", "crash", pid=e.pid)
            result.success = False
            result.exit_code = result.exit_code or 1
            result.diagnostics.append(diagnostic)
        except SandboxError as e:
            diagnostic = format_diagnostic(e)
            self.console.print(f"[bold red]{diagnostic}[/bold red]")
            write_log({"event": "init_failure", "error": diagnostic}, trace_id=self.trace_id)
            result.success = False
            result.exit_code = 1
            result.diagnostics.append(diagnostic)
            return self._finish(result, timer, config)

        result.warnings.extend(controller.last_warnings)
        for warning in result.warnings:
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")
        elapsed = timer.mark("build")
        cloudwatch.emit(self.trace_id, "stage", "build", elapsed_ms=elapsed * 1000)
        return self._finish(result, timer, config)

    def _finish(self, result, timer, config):
        result.elapsed = timer.total
        write_log({
            "event": "build",
            "result": "success" if result.success else "failure",
            "exit_code": result.exit_code,
            "sandboxfs": config.enabled,
            "debug": config.debug_mode,
            "pid": result.pid,
            "mount_path": result.mount_path,
            "warnings": len(result.warnings),
        }, trace_id=self.trace_id)
        return result

    def shutdown(self):
        """Stop the server's sandboxfs process, overriding debug retention."""
        if self._closed:
            return []
        self._closed = True
        atexit.unregister(self.shutdown)
        t0 = time.monotonic()
        warnings = self.controller.shutdown()
        self.controller.mounts.release()
        for warning in warnings:
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")
        cloudwatch.emit(self.trace_id, "stage", "teardown",
                        elapsed_ms=(time.monotonic() - t0) * 1000)
        return warnings

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()


def _run_actions(actions, mount_path, after_each=None):
    for action in actions:
        exit_code = action(mount_path)
        if after_each is not None:
            after_each()
        if exit_code:
            return exit_code
    return 0
