"""Shared fixtures: isolated state dirs plus two kinds of fake sandboxfs.

FakeSandboxfs is an in-memory stand-in (stream pair + fake PID) for unit tests
of the supervisor and lifecycle controller. `sandboxfs_script` writes a POSIX
shell script that speaks the same line protocol as the real binary, for
end-to-end tests against real child processes.
"""

import itertools
import os
import stat
import sys
from collections import deque

import pytest

from mountkeeper import cloudwatch
from mountkeeper.sandbox.base import ACK_LINE, HandshakeChannel, ProcessHandle

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


# ── In-memory fake ────────────────────────────────────────────────────────────

class FakeChannel(HandshakeChannel):

    def __init__(self, process):
        self._process = process
        self._pending = deque()
        self.closed = False

    def send_line(self, text):
        if self.closed or self._process.returncode is not None:
            raise BrokenPipeError("fake sandboxfs is gone")
        self._process.received.append(text)
        if text == "" and self._process.respond:
            self._process.acks += 1
            crash_after = self._process.crash_after
            if crash_after is not None and self._process.acks > crash_after:
                self._process.crash()
                return
            self._pending.extend(self._process.chatter)
            self._pending.append(ACK_LINE)

    def read_line(self, timeout):
        if self._pending:
            return self._pending.popleft()
        if self.closed or self._process.returncode is not None:
            return None
        raise TimeoutError(f"fake sandboxfs sent nothing within {timeout}s")

    def close(self):
        self.closed = True


class FakeSandboxfs(ProcessHandle):
    _pids = itertools.count(40000)

    def __init__(self, executable, mount_path, respond=True, ignore_term=False,
                 crash_after=None, chatter=()):
        self.pid = next(FakeSandboxfs._pids)
        self.args = [str(executable), str(mount_path)]
        self.respond = respond
        self.ignore_term = ignore_term
        self.crash_after = crash_after
        self.chatter = list(chatter)
        self.received = []
        self.acks = 0
        self.returncode = None
        self.terminate_calls = 0
        self.kill_calls = 0
        self.channel = FakeChannel(self)

    @property
    def running(self):
        return self.returncode is None

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        if not self.ignore_term and self.returncode is None:
            self.returncode = -15

    def kill(self):
        self.kill_calls += 1
        if self.returncode is None:
            self.returncode = -9

    def wait(self, timeout):
        if self.returncode is None:
            raise TimeoutError(f"fake sandboxfs {self.pid} still running")
        return self.returncode

    def crash(self, code=1):
        self.returncode = code


class FakeSpawner:
    """Callable spawner recording every fake process it starts.

    Attributes set on the spawner (respond, ignore_term, crash_after, chatter)
    apply to processes spawned afterwards; `error` makes the next spawn fail.
    """

    def __init__(self):
        self.spawned = []
        self.options = {}
        self.error = None

    def __call__(self, executable, mount_path):
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        process = FakeSandboxfs(executable, mount_path, **self.options)
        self.spawned.append(process)
        return process

    @property
    def last(self):
        return self.spawned[-1]


def interrupted_spawn(spawner):
    """Spawner whose processes get Ctrl-C'd while the server waits for a reply."""
    def spawn(executable, mount_path):
        fake = spawner(executable, mount_path)

        def read_line(timeout):
            raise KeyboardInterrupt

        fake.channel.read_line = read_line
        return fake
    return spawn


def dying_after_handshake_spawn(spawner, code=2):
    """Spawner whose processes exit right after acknowledging readiness."""
    def spawn(executable, mount_path):
        fake = spawner(executable, mount_path)
        read_line = fake.channel.read_line

        def read_then_exit(timeout):
            line = read_line(timeout)
            fake.crash(code)
            return line

        fake.channel.read_line = read_then_exit
        return fake
    return spawn


# ── Helpers ───────────────────────────────────────────────────────────────────

def make_executable(path, body="#!/bin/sh\nexit 0\n"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


_FAKE_SANDBOXFS = """\
#! /bin/sh

rm -f "{log}"
trap 'echo "Terminated" >>"{log}"' EXIT TERM

echo "PID: ${{$}}" >>"{log}"
echo "ARGS: ${{*}}" >>"{log}"

while read line; do
  echo "Received: ${{line}}" >>"{log}"
  if [ -z "${{line}}" ]; then
    echo "Done"
  fi
done
"""


def pid_running(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep audit logs and global config out of the real home directory."""
    home = tmp_path / "mk-home"
    monkeypatch.setattr("mountkeeper.config.HOME_DIR", home)
    monkeypatch.setattr("mountkeeper.config.GLOBAL_CONFIG_FILE", home / "config.json")
    monkeypatch.setattr("mountkeeper.log.LOGS_FILE", home / "logs.jsonl")
    monkeypatch.setattr("mountkeeper.cli.LOGS_FILE", home / "logs.jsonl")
    monkeypatch.setattr(cloudwatch, "_client", None)
    return home


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def fake_tools(tmp_path):
    """A PATH directory holding an executable named sandboxfs."""
    tools = tmp_path / "fake-tools"
    make_executable(tools / "sandboxfs")
    return tools


@pytest.fixture
def sandboxfs_script(tmp_path):
    """Write the shell fake sandboxfs; returns (script_path, log_path)."""
    log = tmp_path / "sandboxfs.log"
    script = make_executable(tmp_path / "fake-sandboxfs.sh", _FAKE_SANDBOXFS.format(log=log))
    return script, log
