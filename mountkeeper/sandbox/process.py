"""Supervision of a single sandboxfs process.

A process moves through starting → ready → active → terminating → terminated.
The only shortcut to terminated is a crash: the supervisor notices end of
stream on the handshake channel (or a dead PID) and raises
UnexpectedTermination.

terminate() is the single teardown path. It is idempotent and may be called
from any non-terminal state; the first call does the work and every later call
returns immediately.
"""

import threading
import time
from enum import Enum
from pathlib import Path

from mountkeeper.errors import ForcedTermination, LaunchFailed, UnexpectedTermination
from mountkeeper.log import write_log
from mountkeeper.sandbox.base import ACK_LINE, END_OF_BATCH

# How long to wait for a process that closed its output to actually exit.
_REAP_GRACE = 1.0


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    ACTIVE = "active"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


_TRANSITIONS = {
    ProcessState.STARTING: {ProcessState.READY, ProcessState.TERMINATING, ProcessState.TERMINATED},
    ProcessState.READY: {ProcessState.ACTIVE, ProcessState.TERMINATING, ProcessState.TERMINATED},
    ProcessState.ACTIVE: {ProcessState.TERMINATING, ProcessState.TERMINATED},
    ProcessState.TERMINATING: {ProcessState.TERMINATED},
    ProcessState.TERMINATED: set(),
}


class SandboxProcess:
    """One sandboxfs instance. PID and mount path never change after launch."""

    def __init__(self, handle, mount_path):
        self._handle = handle
        self._pid = handle.pid
        self._mount_path = Path(mount_path)
        self._lock = threading.RLock()
        self.state = ProcessState.STARTING
        self.exit_code = None
        self.crashed = False
        self.output = []  # lines other than acknowledgements, for diagnostics

    @property
    def pid(self):
        return self._pid

    @property
    def mount_path(self):
        return self._mount_path

    @property
    def channel(self):
        return self._handle.channel

    @property
    def is_live(self):
        return self.state in (ProcessState.READY, ProcessState.ACTIVE)

    @property
    def is_terminated(self):
        return self.state is ProcessState.TERMINATED

    def _set_state(self, new_state):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"sandboxfs process {self.pid}: illegal transition "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def __repr__(self):
        return f"<SandboxProcess pid={self.pid} mount={self.mount_path} state={self.state.value}>"


class ProcessSupervisor:
    """Launches sandboxfs, runs the handshake, and tears it down.

    `spawn(executable, mount_path)` returns a ProcessHandle; the default runs a
    real child process, tests pass an in-memory fake.
    """

    def __init__(self, spawn=None, trace_id=None):
        if spawn is None:
            from mountkeeper.sandbox import create_spawner
            spawn = create_spawner()
        self._spawn = spawn
        self.trace_id = trace_id

    def launch(self, executable, mount_path, handshake_timeout=10.0):
        """Spawn `executable <mount_path>` and wait until it acknowledges readiness."""
        try:
            handle = self._spawn(executable, mount_path)
        except OSError as e:
            raise LaunchFailed(executable, e.strerror or e)

        process = SandboxProcess(handle, mount_path)
        try:
            self._await_ack(process, handshake_timeout)
        except TimeoutError:
            self.terminate(process, handshake_timeout)
            raise LaunchFailed(executable, f"no handshake reply within {handshake_timeout}s")
        except UnexpectedTermination as e:
            raise LaunchFailed(executable, f"exited during startup (exit code {e.exit_code})")
        except BaseException:
            # KeyboardInterrupt included; the child never sees our Ctrl-C.
            self.terminate(process, handshake_timeout)
            raise

        with process._lock:
            process._set_state(ProcessState.READY)
        write_log({
            "event": "launch",
            "pid": process.pid,
            "mount_path": process.mount_path,
            "executable": executable,
        }, trace_id=self.trace_id)
        return process

    def activate(self, process):
        """Mark the mount as in use by the current build."""
        with process._lock:
            if not self.is_alive(process):
                raise UnexpectedTermination(process.pid, process.exit_code)
            if process.state is ProcessState.READY:
                process._set_state(ProcessState.ACTIVE)

    def acknowledge(self, process, timeout=10.0):
        """Send an end-of-batch marker and wait for the "Done" reply.

        A process that stops answering within `timeout` is torn down and
        reported like a crash.
        """
        with process._lock:
            if not process.is_live:
                raise UnexpectedTermination(process.pid, process.exit_code)
            try:
                self._await_ack(process, timeout)
            except TimeoutError:
                self.terminate(process, timeout)
                process.crashed = True
                raise UnexpectedTermination(
                    process.pid, process.exit_code,
                    reason=f"stopped responding for {timeout}s",
                )

    def is_alive(self, process):
        """Poll the process. A dead process found here is recorded as a crash."""
        with process._lock:
            if process.state in (ProcessState.TERMINATING, ProcessState.TERMINATED):
                return False
            exit_code = process._handle.poll()
            if exit_code is None:
                return True
            self._record_crash(process, exit_code)
            return False

    def terminate(self, process, timeout=5.0):
        """Stop the process and wait for it to release the mount.

        Sends SIGTERM and waits up to `timeout`, then escalates to SIGKILL.
        Returns a ForcedTermination warning if escalation was needed, else None.
        Always leaves the process terminated.
        """
        with process._lock:
            if process.state in (ProcessState.TERMINATING, ProcessState.TERMINATED):
                return None
            process._set_state(ProcessState.TERMINATING)

            handle = process._handle
            forced = None
            handle.terminate()
            process.channel.close()
            try:
                exit_code = handle.wait(timeout)
            except TimeoutError:
                forced = ForcedTermination(process.pid, timeout)
                handle.kill()
                try:
                    exit_code = handle.wait(timeout)
                except TimeoutError:
                    exit_code = None  # stuck in the kernel; nothing more we can do

            process.exit_code = exit_code
            process._set_state(ProcessState.TERMINATED)

        if forced:
            write_log({
                "event": "forced_termination",
                "pid": process.pid,
                "mount_path": process.mount_path,
                "timeout": timeout,
            }, trace_id=self.trace_id)
        write_log({
            "event": "terminate",
            "pid": process.pid,
            "mount_path": process.mount_path,
            "exit_code": exit_code,
            "forced": forced is not None,
        }, trace_id=self.trace_id)
        return forced

    def _await_ack(self, process, timeout):
        deadline = time.monotonic() + timeout
        try:
            process.channel.send_line(END_OF_BATCH)
        except OSError:
            self._reap_crashed(process)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"no acknowledgement within {timeout}s")
            line = process.channel.read_line(remaining)
            if line is None:
                self._reap_crashed(process)
            if line == ACK_LINE:
                return
            process.output.append(line)

    def _reap_crashed(self, process):
        """Handle end of stream outside of terminate(): reap, record, raise."""
        handle = process._handle
        exit_code = handle.poll()
        if exit_code is None:
            try:
                exit_code = handle.wait(_REAP_GRACE)
            except TimeoutError:
                # Closed its output but kept running: not usable, stop it.
                handle.kill()
                try:
                    exit_code = handle.wait(_REAP_GRACE)
                except TimeoutError:
                    exit_code = None
        self._record_crash(process, exit_code)
        raise UnexpectedTermination(process.pid, exit_code)

    def _record_crash(self, process, exit_code):
        process.exit_code = exit_code
        process.crashed = True
        process.channel.close()
        process._set_state(ProcessState.TERMINATED)
        write_log({
            "event": "crash",
            "pid": process.pid,
            "mount_path": process.mount_path,
            "exit_code": exit_code,
        }, trace_id=self.trace_id)
