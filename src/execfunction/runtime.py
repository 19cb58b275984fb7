"""Parent-process runtime for execfunction child processes."""

import concurrent.futures
import os
import subprocess
import threading
from collections.abc import Callable
from collections.abc import Sequence
from typing import IO
from typing import Any

from execfunction.builder import InvocationRequest
from execfunction.builder import build_child_arguments
from execfunction.builder import build_invocation_request
from execfunction.codec import ArgumentCodec
from execfunction.codec import select_argument_codec
from execfunction.errors import InvocationFault
from execfunction.errors import LaunchError
from execfunction.host import HostLaunchPlan
from execfunction.host import get_host_launch_plan
from execfunction.logs import get_logger

logger = get_logger(__name__)

ConfigureStep = Callable[["LaunchOptions"], object]
ExitCallback = Callable[["ChildProcess"], object]
OutputData = str | bytes | None


class LaunchOptions:
    """Launch options handed to configuration steps before the child starts."""

    cwd: str | os.PathLike[str] | None
    redirect_stdin: bool
    redirect_stdout: bool
    redirect_stderr: bool
    encoding: str | None
    on_exit: ExitCallback | None
    attach_debugger: bool
    check: bool
    _env: dict[str, str] | None

    def __init__(self) -> None:
        """Initialize system defaults: inherit everything, redirect nothing."""
        self.cwd = None
        self.redirect_stdin = False
        self.redirect_stdout = False
        self.redirect_stderr = False
        self.encoding = "utf-8"
        self.on_exit = None
        self.attach_debugger = False
        self.check = False
        self._env = None

    @property
    def env(self) -> dict[str, str]:
        """Return the child environment, copied from ``os.environ`` on first access.

        :returns: Mutable environment mapping.
        """
        if self._env is None:
            self._env = dict(os.environ)
        return self._env

    @env.setter
    def env(self, value: dict[str, str] | None) -> None:
        """Replace the child environment.

        :param value: New environment, or ``None`` to inherit the parent's.
        """
        if value is None:
            self._env = None
            return
        self._env = dict(value)

    def popen_environment(self) -> dict[str, str] | None:
        """Return the environment to pass to ``subprocess``.

        :returns: Environment mapping, or ``None`` to inherit.
        """
        return self._env


def redirect_stdio(options: LaunchOptions) -> None:
    """Configuration step that redirects all three standard streams.

    :param options: Options being configured.
    """
    options.redirect_stdin = True
    options.redirect_stdout = True
    options.redirect_stderr = True


def apply_configuration(steps: Sequence[ConfigureStep | None]) -> LaunchOptions:
    """Build launch options from system defaults and ordered steps.

    Later steps override earlier ones on the fields they touch; fields
    they leave alone keep the values set before them.

    :param steps: Configuration steps in registration order; ``None`` entries are skipped.
    :returns: Configured options.
    """
    options = LaunchOptions()
    for step in steps:
        if step is not None:
            step(options)
    return options


class ChildProcess:
    """Own one child process until it is closed."""

    _popen: subprocess.Popen[Any]
    _command_line: str
    _on_exit: ExitCallback | None
    _check: bool
    _lock: threading.Lock
    _exit_callback_invoked: bool
    _output_collected: bool
    _stdout: OutputData
    _stderr: OutputData
    _is_closed: bool

    def __init__(
        self,
        popen: subprocess.Popen[Any],
        command_line: str,
        on_exit: ExitCallback | None = None,
        check: bool = False,
    ) -> None:
        """Wrap a started process.

        :param popen: Started process.
        :param command_line: Display form of its command line.
        :param on_exit: Optional callback invoked once after exit.
        :param check: Whether a nonzero exit code is a failure.
        """
        self._popen = popen
        self._command_line = command_line
        self._on_exit = on_exit
        self._check = check
        self._lock = threading.Lock()
        self._exit_callback_invoked = False
        self._output_collected = False
        self._stdout = None
        self._stderr = None
        self._is_closed = False

    @property
    def pid(self) -> int:
        """Return the child process identifier.

        :returns: Process identifier.
        """
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        """Return the exit code, or ``None`` while the child runs.

        :returns: Exit code or ``None``.
        """
        return self._popen.returncode

    @property
    def command_line(self) -> str:
        """Return the display form of the child command line.

        :returns: Command line string.
        """
        return self._command_line

    @property
    def stdin(self) -> IO[Any] | None:
        """Return the writable standard input pipe, when redirected.

        :returns: Pipe or ``None``.
        """
        return self._popen.stdin

    @property
    def stdout(self) -> OutputData:
        """Return standard output collected by :meth:`wait`.

        :returns: Captured output, or ``None`` when not redirected or not yet collected.
        """
        return self._stdout

    @property
    def stderr(self) -> OutputData:
        """Return standard error collected by :meth:`wait`.

        :returns: Captured output, or ``None`` when not redirected or not yet collected.
        """
        return self._stderr

    @property
    def popen(self) -> subprocess.Popen[Any]:
        """Return the underlying ``subprocess.Popen`` for direct stream access.

        :returns: Wrapped process.
        """
        return self._popen

    @property
    def is_closed(self) -> bool:
        """Report whether the handle has been released.

        :returns: ``True`` after :meth:`close`.
        """
        return self._is_closed

    def _has_output_pipes(self) -> bool:
        return self._popen.stdout is not None or self._popen.stderr is not None

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the child to exit, collecting redirected output.

        :param timeout: Seconds to wait; ``None`` waits forever.
        :returns: Exit code.
        :raises subprocess.TimeoutExpired: If the child is still running after ``timeout``.
        """
        if self._output_collected is False and self._has_output_pipes() is True:
            stdin_pipe: IO[Any] | None = self._popen.stdin
            if stdin_pipe is not None and stdin_pipe.closed is True:
                self._popen.stdin = None
            stdout_data, stderr_data = self._popen.communicate(timeout=timeout)
            self._stdout = stdout_data
            self._stderr = stderr_data
            self._output_collected = True
        returncode: int = self._popen.wait(timeout=timeout)
        return returncode

    def poll(self) -> int | None:
        """Check whether the child has exited without blocking.

        :returns: Exit code or ``None``.
        """
        return self._popen.poll()

    def terminate(self) -> None:
        """Ask the child to stop."""
        self._popen.terminate()

    def kill(self) -> None:
        """Stop the child immediately; it cannot report a meaningful exit code."""
        self._popen.kill()

    def notify_exit(self) -> None:
        """Invoke the exit callback once, after the child has exited."""
        with self._lock:
            if self._exit_callback_invoked is True:
                return
            self._exit_callback_invoked = True
            callback: ExitCallback | None = self._on_exit
        if callback is not None:
            callback(self)

    def check_returncode(self) -> None:
        """Raise when checking was requested and the child failed.

        :raises InvocationFault: If ``check`` is set and the exit code is nonzero.
        """
        returncode: int | None = self._popen.returncode
        if self._check is True and returncode is not None and returncode != 0:
            raise InvocationFault(returncode, self._stderr, self._command_line)

    def close(self) -> None:
        """Release the pipes of this handle; a second call does nothing."""
        with self._lock:
            if self._is_closed is True:
                return
            self._is_closed = True

        for stream in (self._popen.stdin, self._popen.stdout, self._popen.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                logger.debug("execfunction.close.stream_error", pid=self.pid)

    def __enter__(self) -> "ChildProcess":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<ChildProcess pid={self.pid} returncode={self.returncode} command_line={self._command_line!r}>"


def _stream_target(redirect: bool) -> int | None:
    if redirect is True:
        return subprocess.PIPE
    return None


def launch(
    request: InvocationRequest,
    options: LaunchOptions,
    plan: HostLaunchPlan | None = None,
    codec: ArgumentCodec | None = None,
) -> ChildProcess:
    """Start a child process for ``request``.

    :param request: Invocation request.
    :param options: Configured launch options.
    :param plan: Launch plan; defaults to the process-wide plan.
    :param codec: Argument codec; defaults to the codec of this platform.
    :returns: Handle of the started child.
    :raises LaunchError: If the operating system cannot create the process.
    """
    launch_plan: HostLaunchPlan = get_host_launch_plan() if plan is None else plan
    argument_codec: ArgumentCodec = select_argument_codec() if codec is None else codec
    arguments: list[str] = build_child_arguments(launch_plan, request)
    command: str | list[str] = argument_codec.build_command(launch_plan.executable, arguments)
    command_line: str = argument_codec.display(launch_plan.executable, arguments)

    uses_text: bool = options.encoding is not None
    try:
        popen: subprocess.Popen[Any] = subprocess.Popen(
            command,
            cwd=options.cwd,
            env=options.popen_environment(),
            stdin=_stream_target(options.redirect_stdin),
            stdout=_stream_target(options.redirect_stdout),
            stderr=_stream_target(options.redirect_stderr),
            text=uses_text,
            encoding=options.encoding,
        )
    except OSError as exc:
        raise LaunchError(f"Failed to start {command_line}") from exc

    logger.debug(
        "execfunction.launch",
        pid=popen.pid,
        shape=launch_plan.shape,
        qualname=request.identity.qualname,
        command_line=command_line,
    )
    return ChildProcess(popen, command_line, on_exit=options.on_exit, check=options.check)


class FunctionExecutor:
    """Reusable invoker with base configuration steps.

    Configuration is applied in order: system defaults, the executor's
    steps, then the call-site step.
    """

    _configure_steps: tuple[ConfigureStep, ...]

    def __init__(self, *configure_steps: ConfigureStep) -> None:
        """Initialize the executor.

        :param configure_steps: Base configuration steps in application order.
        """
        self._configure_steps = tuple(configure_steps)

    def with_configuration(self, *configure_steps: ConfigureStep) -> "FunctionExecutor":
        """Return a new executor with extra base steps appended.

        :param configure_steps: Steps applied after the existing ones.
        :returns: New executor.
        """
        return FunctionExecutor(*self._configure_steps, *configure_steps)

    def _prepare(
        self,
        function: Callable[..., object],
        args: Sequence[str] | None,
        configure: ConfigureStep | None,
    ) -> tuple[InvocationRequest, LaunchOptions]:
        options: LaunchOptions = apply_configuration([*self._configure_steps, configure])
        request: InvocationRequest = build_invocation_request(
            function,
            args,
            attach_debugger=options.attach_debugger,
        )
        return request, options

    def start(
        self,
        function: Callable[..., object],
        args: Sequence[str] | None = None,
        configure: ConfigureStep | None = None,
    ) -> ChildProcess:
        """Start ``function`` in a child and return immediately.

        The caller owns the handle: wait for it and close it.

        :param function: Function to run in the child.
        :param args: String arguments passed to the function.
        :param configure: Call-site configuration step.
        :returns: Child handle.
        :raises LaunchError: If the child cannot be started.
        """
        request, options = self._prepare(function, args, configure)
        return launch(request, options)

    def run(
        self,
        function: Callable[..., object],
        args: Sequence[str] | None = None,
        configure: ConfigureStep | None = None,
    ) -> int:
        """Run ``function`` in a child and block until it exits.

        The exit callback sees the finished handle; the handle is closed
        even when the callback raises.

        :param function: Function to run in the child.
        :param args: String arguments passed to the function.
        :param configure: Call-site configuration step.
        :returns: Child exit code.
        :raises LaunchError: If the child cannot be started.
        :raises InvocationFault: If ``check`` is set and the exit code is nonzero.
        """
        child: ChildProcess = self.start(function, args, configure)
        try:
            returncode: int = child.wait()
            logger.debug("execfunction.exit", pid=child.pid, returncode=returncode)
            child.notify_exit()
            child.check_returncode()
        finally:
            child.close()
        return returncode

    def run_async(
        self,
        function: Callable[..., object],
        args: Sequence[str] | None = None,
        configure: ConfigureStep | None = None,
    ) -> "concurrent.futures.Future[int]":
        """Run ``function`` in a child and return a future for its exit code.

        A watcher thread waits for the exit, runs the exit callback, then
        resolves the future; the handle is closed after that.  The future
        cannot be cancelled.

        :param function: Function to run in the child.
        :param args: String arguments passed to the function.
        :param configure: Call-site configuration step.
        :returns: Future resolving to the exit code.
        :raises LaunchError: If the child cannot be started.
        """
        child: ChildProcess = self.start(function, args, configure)
        future: concurrent.futures.Future[int] = concurrent.futures.Future()
        future.set_running_or_notify_cancel()

        watcher = threading.Thread(
            target=_watch_child,
            args=(child, future),
            name=f"execfunction-exit-{child.pid}",
            daemon=True,
        )
        watcher.start()
        return future


def _watch_child(child: ChildProcess, future: "concurrent.futures.Future[int]") -> None:
    """Wait for ``child`` and resolve ``future`` with its outcome.

    :param child: Child handle.
    :param future: Future to resolve.
    """
    try:
        returncode: int = child.wait()
        logger.debug("execfunction.exit", pid=child.pid, returncode=returncode)
        child.notify_exit()
        child.check_returncode()
    except Exception as exc:
        future.set_exception(exc)
    else:
        future.set_result(returncode)
    finally:
        child.close()
