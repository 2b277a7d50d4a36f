from abc import ABC, abstractmethod

# Reply the sandboxfs process writes after receiving an empty line, which marks
# the end of an input batch.
ACK_LINE = "Done"
END_OF_BATCH = ""


class HandshakeChannel(ABC):
    """Line-oriented stream pair to a sandboxfs process.

    Implementations: PipeChannel (subprocess stdin/stdout), in-memory fakes in tests.
    """

    @abstractmethod
    def send_line(self, text):
        """Write one line to the process. Raises BrokenPipeError once the peer is gone."""
        pass

    @abstractmethod
    def read_line(self, timeout):
        """Wait up to `timeout` seconds for one line from the process.

        Returns the line without its terminator, or None at end of stream.
        Raises TimeoutError if no complete line arrived in time.
        """
        pass

    @abstractmethod
    def close(self):
        pass


class ProcessHandle(ABC):
    """A spawned sandboxfs process as seen by the supervisor."""

    pid = None
    channel = None

    @abstractmethod
    def poll(self):
        """Return the exit code, or None while the process is running."""
        pass

    @abstractmethod
    def terminate(self):
        """Ask the process to unmount and exit (SIGTERM)."""
        pass

    @abstractmethod
    def kill(self):
        """Stop the process unconditionally (SIGKILL)."""
        pass

    @abstractmethod
    def wait(self, timeout):
        """Block until exit. Returns the exit code, raises TimeoutError after `timeout`."""
        pass
