from typing import Optional, Sequence


class ShellwireError(Exception):
    kind = "error"


class SessionConnectError(ShellwireError, ConnectionError):
    """The channel never reached the ready state."""
    kind = "connection"


class ConnectionLostError(ShellwireError, ConnectionError):
    """The channel died; every queued and in-flight request fails with this."""
    kind = "connection_lost"


class SessionClosedError(ShellwireError):
    kind = "closed"


class ProtocolError(ShellwireError):
    """The delimiter framing came back in a shape the executor cannot trust."""
    kind = "protocol"


class AuthenticationError(ShellwireError):
    kind = "authentication"

    def __init__(self, message: str, command: str = ""):
        super().__init__(message)
        self.command = command


class OperationError(ShellwireError):
    kind = "operation"

    def __init__(
        self,
        operation: str,
        paths: Sequence[str],
        message: str,
        exit_code: Optional[int] = None,
        timed_out: bool = False,
    ):
        self.operation = operation
        self.paths = tuple(paths)
        self.message = message
        self.exit_code = exit_code
        self.timed_out = timed_out
        if timed_out:
            self.kind = "timeout"
        joined = ", ".join(f"'{p}'" for p in self.paths)
        super().__init__(f"{operation} failed for {joined}: {message}")

    def to_dict(self):
        return {
            "operation": self.operation,
            "paths": list(self.paths),
            "message": self.message,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
        }


class ParseError(ShellwireError):
    kind = "parse"


class UnknownCapabilityError(ShellwireError, KeyError):
    kind = "capability"
