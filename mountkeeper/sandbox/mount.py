import fcntl
import itertools
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from mountkeeper.errors import MountAllocationFailed, MountReclaimFailed
from mountkeeper.sandbox.process import ProcessState

MOUNT_PREFIX = "sandboxfs"
LOCK_FILENAME = ".servers.lock"


@dataclass(frozen=True)
class MountRequest:
    sandbox_base_dir: Path
    mount_name: str

    @property
    def path(self):
        return Path(self.sandbox_base_dir) / self.mount_name


class MountPointManager:
    """Hands out fresh, empty mount directories under one sandbox base dir.

    Names combine a counter with a random token, so a path handed out once is
    never handed out again by this manager, nor by a later server reusing the
    same base dir.
    """

    _MAX_ATTEMPTS = 5

    def __init__(self, sandbox_base_dir):
        self.sandbox_base_dir = Path(sandbox_base_dir).absolute()
        self._counter = itertools.count(1)
        self._lock_file = None

    def next_request(self):
        token = uuid.uuid4().hex[:8]
        return MountRequest(self.sandbox_base_dir, f"{MOUNT_PREFIX}-{next(self._counter)}-{token}")

    def allocate(self):
        """Create a new empty mount directory and return its absolute path."""
        try:
            self.sandbox_base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountAllocationFailed(self.sandbox_base_dir, e.strerror or e)

        path = None
        for _ in range(self._MAX_ATTEMPTS):
            path = self.next_request().path
            try:
                path.mkdir()
                return path
            except FileExistsError:
                continue
            except OSError as e:
                raise MountAllocationFailed(path, e.strerror or e)
        raise MountAllocationFailed(path, "could not find an unused name")

    def reclaim(self, mount_path):
        """Remove the mount directory. A path that is already gone is fine."""
        mount_path = Path(mount_path)
        if os.path.ismount(mount_path):
            # Never recurse into a live mount: it maps real directories.
            raise MountReclaimFailed(mount_path, "still mounted")
        try:
            shutil.rmtree(mount_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            # EBUSY here usually means sandboxfs died without unmounting.
            raise MountReclaimFailed(mount_path, e.strerror or e)

    def reclaim_for(self, process):
        """Reclaim the mount of `process`, which must already be terminated."""
        if process.state is not ProcessState.TERMINATED:
            raise MountReclaimFailed(
                process.mount_path,
                f"sandboxfs process {process.pid} is still {process.state.value}",
            )
        self.reclaim(process.mount_path)

    def claim(self):
        """Mark the base dir as used by this server until release().

        Every server holds a shared flock on LOCK_FILENAME for its lifetime. The
        first one in also gets the exclusive lock briefly and sweeps stale mount
        dirs under it, so a live mount of another server is never swept.
        Returns the sweep failures, or None when another server already holds
        the base dir (or it cannot be created) and the sweep was skipped.
        """
        if self._lock_file is not None:
            return None
        try:
            self.sandbox_base_dir.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.sandbox_base_dir / LOCK_FILENAME, "a")
        except OSError:
            return None
        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            failures = None
        else:
            failures = self.sweep()
        fcntl.flock(lock_file, fcntl.LOCK_SH)
        self._lock_file = lock_file
        return failures

    def release(self):
        if self._lock_file is not None:
            self._lock_file.close()  # drops the flock
            self._lock_file = None

    def sweep(self):
        """Remove mount dirs left behind by an earlier server. Returns failures.

        Only safe while no other server uses the base dir; see claim().
        """
        if not self.sandbox_base_dir.is_dir():
            return []
        failures = []
        for entry in sorted(self.sandbox_base_dir.glob(f"{MOUNT_PREFIX}-*")):
            if not entry.is_dir():
                continue
            try:
                self.reclaim(entry)
            except MountReclaimFailed as e:
                failures.append(e)
        return failures
