"""Work out how to re-launch the current program for a child invocation.

The result is a :class:`HostLaunchPlan`, resolved once per process and
cached: the way a process was started does not change while it runs.
"""

import ntpath
import re
import sys
import threading
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import Literal

import psutil

from execfunction.cmdline import current_full_command_line
from execfunction.errors import ExecFunctionError
from execfunction.errors import UnsupportedHostError
from execfunction.logs import get_logger

logger = get_logger(__name__)

HostShape = Literal["frozen", "interpreter", "test_host"]
EXEC_FUNCTION_COMMAND: str = "execfunc"
PARENT_PROCESS_ID_FLAG: str = "--parentprocessid"
DISPATCH_BOOTSTRAP: str = (
    "import sys; sys.path.insert(0, sys.argv.pop(1)); "
    + "from execfunction.worker import main; main()"
)

_INTERPRETER_NAME_PATTERN: re.Pattern[str] = re.compile(r"^(python|pypy)(\d+(\.\d+)*)?[dmtw]?(_d)?(\.exe)?$")
_VALUE_FLAGS: str = "XW"
_TERMINATOR_FLAGS: str = "cm"
_DROPPED_FLAGS: str = "i"
_LONG_VALUE_OPTIONS: tuple[str, ...] = ("--check-hash-based-pycs",)

_HOST_PLAN_LOCK: threading.Lock = threading.Lock()
_HOST_PLAN: "HostLaunchPlan | None" = None
_HOST_PLAN_ERROR: ExecFunctionError | None = None


@dataclass(frozen=True)
class HostLaunchPlan:
    """How to start a child that reproduces the current launch."""

    shape: HostShape
    executable: str
    prefix_arguments: tuple[str, ...]


def is_python_interpreter(path: str) -> bool:
    """Report whether ``path`` names a Python interpreter binary.

    :param path: Executable path.
    :returns: ``True`` for ``python``, ``python3.12``, ``pythonw.exe``, ``pypy3`` and similar.
    """
    # ntpath splits on both separators, so Windows paths resolve on any host.
    base_name: str = ntpath.basename(path).lower()
    return _INTERPRETER_NAME_PATTERN.match(base_name) is not None


def interpreter_options(command_line: Sequence[str]) -> list[str]:
    """Collect the interpreter options of a Python command line.

    Options are read from ``command_line[1:]`` up to the script, ``-m``,
    ``-c`` or ``-``.  ``-i`` is dropped because an interactive child would
    never exit on its own.  Flag clusters such as ``-Bu`` are split.

    :param command_line: Full argument vector, starting with the interpreter.
    :returns: Options to repeat for a child interpreter.
    """
    options: list[str] = []
    count: int = len(command_line)
    index: int = 1

    while index < count:
        token: str = command_line[index]
        if token in ("-", "--") or token.startswith("-") is False:
            break

        if token.startswith("--") is True:
            name, separator, _ = token.partition("=")
            options.append(token)
            if name in _LONG_VALUE_OPTIONS and separator == "" and index + 1 < count:
                options.append(command_line[index + 1])
                index += 1
            index += 1
            continue

        cluster: str = token[1:]
        terminated: bool = False
        for position, flag in enumerate(cluster):
            if flag in _TERMINATOR_FLAGS:
                terminated = True
                break
            if flag in _VALUE_FLAGS:
                value: str = cluster[position + 1 :]
                if len(value) > 0:
                    options.extend([f"-{flag}", value])
                elif index + 1 < count:
                    options.extend([f"-{flag}", command_line[index + 1]])
                    index += 1
                break
            if flag not in _DROPPED_FLAGS:
                options.append(f"-{flag}")

        if terminated is True:
            break
        index += 1

    return options


def find_parent_process_id(command_line: Sequence[str]) -> int | None:
    """Find the ``--parentprocessid`` value a test host was started with.

    :param command_line: Full argument vector of the test host.
    :returns: Parent process identifier, or ``None`` when absent or malformed.
    """
    prefix: str = f"{PARENT_PROCESS_ID_FLAG}="
    for index, token in enumerate(command_line):
        raw_value: str | None = None
        if token == PARENT_PROCESS_ID_FLAG and index + 1 < len(command_line):
            raw_value = command_line[index + 1]
        elif token.startswith(prefix) is True:
            raw_value = token[len(prefix) :]

        if raw_value is not None:
            try:
                return int(raw_value)
            except ValueError:
                return None
    return None


def dispatch_root() -> str:
    """Return the directory that makes ``execfunction`` importable.

    :returns: Absolute path of the directory containing the package.
    """
    return str(Path(__file__).resolve().parent.parent)


def _interpreter_plan(executable: str, command_line: Sequence[str], shape: HostShape) -> HostLaunchPlan:
    """Build a plan that runs the dispatch bootstrap with the same interpreter options.

    :param executable: Interpreter path.
    :param command_line: Full command line the interpreter was started with.
    :param shape: Host shape to record.
    :returns: Launch plan.
    """
    prefix: list[str] = interpreter_options(command_line)
    prefix.extend(["-c", DISPATCH_BOOTSTRAP, dispatch_root()])
    return HostLaunchPlan(shape=shape, executable=executable, prefix_arguments=tuple(prefix))


def resolve_host_launch_plan(
    executable: str | None = None,
    frozen: bool | None = None,
    read_command_line: Callable[[], list[str]] | None = None,
    process_factory: Callable[[int], Any] | None = None,
) -> HostLaunchPlan:
    """Resolve the launch plan without touching the process-wide cache.

    :param executable: Current executable; defaults to ``sys.executable``.
    :param frozen: Whether the program is a frozen application; defaults to ``sys.frozen``.
    :param read_command_line: Full command-line reader; defaults to the OS reader.
    :param process_factory: Factory returning a ``psutil.Process``-like object for a pid.
    :returns: Launch plan for child processes.
    :raises UnsupportedHostError: If the host shape cannot be reproduced.
    :raises PlatformUnsupportedError: If the full command line cannot be read.
    """
    current_executable: str = sys.executable if executable is None else executable
    is_frozen: bool = bool(getattr(sys, "frozen", False)) if frozen is None else frozen
    command_line_reader: Callable[[], list[str]] = (
        current_full_command_line if read_command_line is None else read_command_line
    )
    make_process: Callable[[int], Any] = psutil.Process if process_factory is None else process_factory

    if len(current_executable) == 0:
        raise UnsupportedHostError("The current executable path is unknown")

    if is_frozen is True:
        return HostLaunchPlan(
            shape="frozen",
            executable=current_executable,
            prefix_arguments=(EXEC_FUNCTION_COMMAND,),
        )

    command_line: list[str] = command_line_reader()

    if is_python_interpreter(current_executable) is True:
        return _interpreter_plan(current_executable, command_line, "interpreter")

    parent_pid: int | None = find_parent_process_id(command_line)
    if parent_pid is None:
        raise UnsupportedHostError(
            f"Cannot re-launch {current_executable!r}: it is not a Python interpreter "
            + f"and its command line has no {PARENT_PROCESS_ID_FLAG} value"
        )

    try:
        parent: Any = make_process(parent_pid)
        parent_executable: str = parent.exe()
        parent_command_line: list[str] = list(parent.cmdline())
    except psutil.Error as exc:
        raise UnsupportedHostError(f"Cannot inspect test host parent process {parent_pid}") from exc

    if is_python_interpreter(parent_executable) is False:
        raise UnsupportedHostError(
            f"Test host parent process {parent_pid} runs {parent_executable!r}, "
            + "which is not a Python interpreter"
        )
    return _interpreter_plan(parent_executable, parent_command_line, "test_host")


def get_host_launch_plan() -> HostLaunchPlan:
    """Return the process-wide launch plan, resolving it on first use.

    A resolution failure is cached as well and raised again on every call.

    :returns: Cached launch plan.
    :raises UnsupportedHostError: If the host shape cannot be reproduced.
    :raises PlatformUnsupportedError: If the full command line cannot be read.
    """
    global _HOST_PLAN
    global _HOST_PLAN_ERROR
    with _HOST_PLAN_LOCK:
        if _HOST_PLAN is not None:
            return _HOST_PLAN
        if _HOST_PLAN_ERROR is not None:
            raise _HOST_PLAN_ERROR

        try:
            plan: HostLaunchPlan = resolve_host_launch_plan()
        except ExecFunctionError as exc:
            _HOST_PLAN_ERROR = exc
            raise

        logger.debug(
            "execfunction.host.resolved",
            shape=plan.shape,
            executable=plan.executable,
            prefix=list(plan.prefix_arguments),
        )
        _HOST_PLAN = plan
        return plan
