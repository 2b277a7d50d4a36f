"""Error taxonomy for the sandboxfs supervisor.

Initialization failures (ExecutableNotFound, LaunchFailed, MountAllocationFailed)
abort the triggering build with a single diagnostic line. Teardown problems
(ForcedTermination, MountReclaimFailed) are reported as warnings and never turn
a finished build into a failed one.
"""

DIAGNOSTIC_PREFIX = "Failed to initialize sandbox"


class SandboxError(RuntimeError):
    """Base class for every sandboxfs lifecycle failure."""


class ExecutableNotFound(SandboxError):

    def __init__(self, path, reason="no such executable file"):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot run {self.path}: {reason}")


class LaunchFailed(SandboxError):

    def __init__(self, executable, cause):
        self.executable = str(executable)
        self.cause = cause
        super().__init__(f"Cannot run {self.executable}: {cause}")


class MountAllocationFailed(SandboxError):

    def __init__(self, path, cause):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Cannot create mount point {self.path}: {cause}")


class MountReclaimFailed(SandboxError):

    def __init__(self, path, cause):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Cannot remove mount point {self.path}: {cause}")


class UnexpectedTermination(SandboxError):

    def __init__(self, pid, exit_code=None, reason="exited unexpectedly"):
        self.pid = pid
        self.exit_code = exit_code
        self.reason = reason
        detail = f" with exit code {exit_code}" if exit_code is not None else ""
        super().__init__(f"sandboxfs process {pid} {reason}{detail}")


class ForcedTermination(UserWarning):
    """sandboxfs ignored SIGTERM and had to be killed."""

    def __init__(self, pid, timeout):
        self.pid = pid
        self.timeout = timeout
        super().__init__(
            f"sandboxfs process {pid} did not exit within {timeout}s of SIGTERM; killed"
        )


_INIT_FAILURES = (ExecutableNotFound, LaunchFailed, MountAllocationFailed)


def is_init_failure(exc):
    """True for errors raised while bringing a sandbox up."""
    return isinstance(exc, _INIT_FAILURES)


def format_diagnostic(exc):
    """Render the one-line, user-facing message for a sandbox failure."""
    if is_init_failure(exc):
        return f"{DIAGNOSTIC_PREFIX}: {exc}"
    if isinstance(exc, UnexpectedTermination):
        return f"Sandbox failed during build: {exc}"
    return str(exc)
