"""Locate the sandboxfs executable.

An explicitly configured path is authoritative: if it is not runnable the
build fails, and PATH is never consulted as a fallback.
"""

import os
from pathlib import Path

from mountkeeper.errors import ExecutableNotFound


def default_search_dirs(environ=None):
    """Directories from PATH, in lookup order."""
    environ = os.environ if environ is None else environ
    return [d for d in environ.get("PATH", "").split(os.pathsep) if d]


def is_executable_file(path):
    path = Path(path)
    return path.is_file() and os.access(path, os.X_OK)


def resolve_executable(explicit_path, search_dirs, name="sandboxfs"):
    """Return the absolute path of the sandboxfs binary to launch.

    Raises ExecutableNotFound naming the explicit path, or the bare executable
    name when the search over `search_dirs` comes up empty.
    """
    if explicit_path:
        path = Path(explicit_path).expanduser()
        if not path.exists():
            raise ExecutableNotFound(explicit_path, "no such file")
        if not is_executable_file(path):
            raise ExecutableNotFound(explicit_path, "not an executable file")
        return path.absolute()

    for directory in search_dirs:
        if not directory:
            continue
        candidate = Path(directory) / name
        if is_executable_file(candidate):
            return candidate.absolute()

    raise ExecutableNotFound(name, "not found in PATH")
