"""Run sandboxfs as a local child process connected through pipes.

Reads from the child's stdout go through select() with a deadline, so a
handshake with a wedged process fails with TimeoutError instead of hanging the
build server. POSIX only: select() does not work on Windows pipes.
"""

import os
import select
import subprocess
import time

from mountkeeper.sandbox.base import HandshakeChannel, ProcessHandle

_READ_CHUNK = 4096


class PipeChannel(HandshakeChannel):

    def __init__(self, stdin, stdout):
        self._stdin = stdin
        self._stdout = stdout
        self._fd = stdout.fileno()
        self._buffer = b""
        self._eof = False
        self._closed = False

    def send_line(self, text):
        if self._closed:
            raise BrokenPipeError("channel is closed")
        self._stdin.write(text.encode() + b"\n")
        self._stdin.flush()

    def read_line(self, timeout):
        deadline = time.monotonic() + timeout
        while True:
            if b"\n" in self._buffer:
                line, self._buffer = self._buffer.split(b"\n", 1)
                return _decode(line)
            if self._eof or self._closed:
                if self._buffer:
                    line, self._buffer = self._buffer, b""
                    return _decode(line)
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"no line from sandboxfs within {timeout}s")
            ready, _, _ = select.select([self._fd], [], [], remaining)
            if not ready:
                continue
            chunk = os.read(self._fd, _READ_CHUNK)
            if chunk:
                self._buffer += chunk
            else:
                self._eof = True

    def close(self):
        if self._closed:
            return
        self._closed = True
        for stream in (self._stdin, self._stdout):
            try:
                stream.close()
            except OSError:
                pass  # peer already gone; nothing left to flush


def _decode(raw):
    return raw.decode(errors="replace").rstrip("\r")


class LocalProcessHandle(ProcessHandle):

    def __init__(self, popen):
        self._popen = popen
        self.pid = popen.pid
        self.channel = PipeChannel(popen.stdin, popen.stdout)

    def poll(self):
        return self._popen.poll()

    def terminate(self):
        if self._popen.poll() is None:
            self._popen.terminate()

    def kill(self):
        if self._popen.poll() is None:
            self._popen.kill()

    def wait(self, timeout):
        try:
            return self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"process {self.pid} still running after {timeout}s")


def spawn_local(executable, mount_path):
    """Start `executable <mount_path>` with stdin/stdout piped for the handshake.

    The child gets its own session so a Ctrl-C aimed at the build server does
    not reach sandboxfs before the server has a chance to tear it down.
    """
    popen = subprocess.Popen(
        [str(executable), str(mount_path)],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        bufsize=0,
        start_new_session=True,
    )
    return LocalProcessHandle(popen)
