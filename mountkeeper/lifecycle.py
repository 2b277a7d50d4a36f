"""Per-build lifecycle of the sandboxfs process.

Which sandbox a build gets depends on what the previous build left behind:

    prior process   prior debug   current debug   decision
    none/dead       -             any             START
    live            true          true            REUSE (same configuration)
    live            any other combination         RESTART

A build that ends with debug mode off always tears the sandbox down, so a live
prior process can only come from a debug build. Any change in configuration
forces a restart so the new settings take effect.

The controller owns the only handle to the process and carries
(process, configuration) from one build to the next itself; nothing is kept in
module globals.
"""

import threading
from contextlib import contextmanager
from enum import Enum

from mountkeeper.errors import LaunchFailed, MountReclaimFailed, UnexpectedTermination
from mountkeeper.log import write_log
from mountkeeper.resolver import resolve_executable
from mountkeeper.sandbox.mount import MountPointManager
from mountkeeper.sandbox.process import ProcessSupervisor


class Decision(str, Enum):
    START = "start"
    REUSE = "reuse"
    RESTART = "restart"


def decide(prior_process, prior_config, current):
    if prior_process is None or not prior_process.is_live:
        return Decision.START
    if (
        prior_config is not None
        and prior_config.debug_mode
        and current.debug_mode
        and current.reusable_with(prior_config)
    ):
        return Decision.REUSE
    return Decision.RESTART


class SandboxLifecycleController:
    """Decides, per build, whether to reuse, restart or start sandboxfs.

    Every transition runs under one lock, so a shutdown racing a build's own
    teardown still terminates the process exactly once.
    """

    def __init__(self, sandbox_base_dir, search_dirs, supervisor=None, mounts=None,
                 trace_id=None):
        self.search_dirs = list(search_dirs)
        self.supervisor = supervisor or ProcessSupervisor(trace_id=trace_id)
        self.mounts = mounts or MountPointManager(sandbox_base_dir)
        self.trace_id = trace_id
        self.last_decision = None
        self.last_warnings = []
        self._process = None
        self._config = None
        self._lock = threading.RLock()

    @property
    def current(self):
        return self._process

    @property
    def configuration(self):
        return self._config

    def begin_build(self, config):
        """Return a live, active sandbox for this build, starting one if needed.

        Raises ExecutableNotFound, LaunchFailed or MountAllocationFailed when a
        new sandbox cannot be brought up. No mount directory is left behind in
        that case.
        """
        with self._lock:
            self.last_warnings = []
            if self._process is not None:
                # A process that died between builds counts as gone.
                self.supervisor.is_alive(self._process)
            decision = decide(self._process, self._config, config)
            self.last_decision = decision

            if decision is Decision.REUSE:
                self.supervisor.activate(self._process)
                self._config = config
                write_log({
                    "event": "reuse",
                    "pid": self._process.pid,
                    "mount_path": self._process.mount_path,
                }, trace_id=self.trace_id)
                return self._process

            self.last_warnings.extend(self._teardown())
            self._process = self._start(config)
            self._config = config
            return self._process

    def end_build(self, config):
        """Finish a build. Returns teardown warnings; they never fail the build."""
        with self._lock:
            if config.debug_mode and self._process is not None and self._process.is_live:
                return []
            warnings = self._teardown()
            self.last_warnings.extend(warnings)
            return warnings

    @contextmanager
    def build(self, config):
        """Scope a build so the sandbox is released per end_build() on every exit path."""
        process = self.begin_build(config)
        try:
            yield process
        except UnexpectedTermination:
            self.last_warnings.extend(self.on_crash())
            raise
        finally:
            self.end_build(config)

    def on_crash(self):
        """Forget a crashed process so the next build starts from scratch."""
        with self._lock:
            return self._teardown()

    def shutdown(self):
        """Tear down unconditionally, debug retention notwithstanding."""
        with self._lock:
            return self._teardown()

    def _start(self, config):
        executable = resolve_executable(
            config.explicit_executable_path, self.search_dirs, config.executable_name
        )
        mount_path = self.mounts.allocate()
        process = None
        try:
            process = self.supervisor.launch(executable, mount_path, config.handshake_timeout)
            try:
                self.supervisor.activate(process)
            except UnexpectedTermination as e:
                raise LaunchFailed(
                    executable, f"exited during startup (exit code {e.exit_code})"
                ) from e
        except BaseException:
            if process is not None:
                self.supervisor.terminate(process, config.terminate_timeout)
            try:
                self.mounts.reclaim(mount_path)
            except MountReclaimFailed as e:
                write_log({"event": "reclaim_failed", "error": str(e)}, trace_id=self.trace_id)
            raise
        return process

    def _teardown(self):
        """Terminate and reclaim the current process, if any. Returns warnings."""
        process, config = self._process, self._config
        self._process = None
        self._config = None
        if process is None:
            return []

        warnings = []
        timeout = config.terminate_timeout if config else 5.0
        forced = self.supervisor.terminate(process, timeout)
        if forced:
            warnings.append(str(forced))
        try:
            self.mounts.reclaim_for(process)
        except MountReclaimFailed as e:
            warnings.append(str(e))
            write_log({"event": "reclaim_failed", "error": str(e), "pid": process.pid},
                      trace_id=self.trace_id)
        return warnings
