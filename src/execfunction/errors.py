"""Custom error types for execfunction."""


class ExecFunctionError(Exception):
    """Base class for all execfunction errors."""


class UsageError(ExecFunctionError):
    """Raised when a child command line does not carry a function identity."""


class ResolutionError(ExecFunctionError):
    """Raised when a target module, type or function cannot be found."""


class UnsupportedHostError(ResolutionError):
    """Raised when the current process cannot be re-launched for a child."""


class PlatformUnsupportedError(ExecFunctionError):
    """Raised when the full command line cannot be recovered on this OS."""


class LaunchError(ExecFunctionError):
    """Raised when the operating system fails to create the child process."""


class InvocationFault(ExecFunctionError):
    """Raised when a checked child function exits with a nonzero code."""

    exit_code: int
    stderr: str | bytes | None
    command_line: str

    def __init__(
        self,
        exit_code: int,
        stderr: str | bytes | None,
        command_line: str,
    ) -> None:
        """Initialize a child failure wrapper.

        :param exit_code: Child process exit code.
        :param stderr: Captured child standard error, when redirected.
        :param command_line: Display form of the child command line.
        """
        self.exit_code = exit_code
        self.stderr = stderr
        self.command_line = command_line
        formatted: str = f"Function exited with code {exit_code}: {command_line}"
        if stderr:
            stderr_text: str = stderr if isinstance(stderr, str) else stderr.decode(errors="replace")
            formatted = formatted + f"\nChild stderr:\n{stderr_text}"
        super().__init__(formatted)
