"""Tests for host launch-plan resolution."""

from collections.abc import Iterator

import psutil
import pytest

import execfunction.host as host_module
from execfunction.errors import UnsupportedHostError
from execfunction.host import DISPATCH_BOOTSTRAP
from execfunction.host import EXEC_FUNCTION_COMMAND
from execfunction.host import HostLaunchPlan
from execfunction.host import dispatch_root
from execfunction.host import find_parent_process_id
from execfunction.host import get_host_launch_plan
from execfunction.host import interpreter_options
from execfunction.host import is_python_interpreter
from execfunction.host import resolve_host_launch_plan


class FakeProcess:
    """Stand-in for ``psutil.Process`` with a fixed executable and command line."""

    executable: str
    command_line: list[str]

    def __init__(self, executable: str, command_line: list[str]) -> None:
        """Initialize the fake process.

        :param executable: Executable path to report.
        :param command_line: Command line to report.
        """
        self.executable = executable
        self.command_line = command_line

    def exe(self) -> str:
        return self.executable

    def cmdline(self) -> list[str]:
        return list(self.command_line)


def _unreadable_command_line() -> list[str]:
    raise AssertionError("the command line must not be read for this host")


@pytest.fixture
def restore_cached_plan() -> Iterator[None]:
    """Save and restore the process-wide plan cache around a test.

    :yields: Control to the active test.
    """
    saved_plan: HostLaunchPlan | None = host_module._HOST_PLAN
    saved_error: object = host_module._HOST_PLAN_ERROR
    yield
    host_module._HOST_PLAN = saved_plan
    host_module._HOST_PLAN_ERROR = saved_error


@pytest.mark.parametrize(
    "path",
    ["python", "python3", "/usr/bin/python3.12", "C:\\Python312\\pythonw.exe", "PYTHON.EXE", "pypy3", "python3.13t"],
)
def test_interpreter_names_are_recognized(path: str) -> None:
    """Interpreter executables are recognized on any path style."""
    assert is_python_interpreter(path) is True


def test_windows_paths_are_recognized_on_any_host() -> None:
    """Backslash-separated paths are split the same way on every platform."""
    assert is_python_interpreter("C:\\Python312\\python.exe") is True
    assert is_python_interpreter("C:/Python312/pythonw.exe") is True
    assert is_python_interpreter("C:\\python3\\testhost.exe") is False


@pytest.mark.parametrize("path", ["pytest", "/usr/bin/bash", "C:\\tools\\testhost.exe", "pythonista"])
def test_other_executables_are_not_interpreters(path: str) -> None:
    """Non-interpreter executables are not mistaken for Python."""
    assert is_python_interpreter(path) is False


def test_options_stop_at_script() -> None:
    """Option recovery stops at the script and splits clusters."""
    command_line: list[str] = ["python", "-Bu", "-Wignore", "script.py", "-X", "dev"]
    assert interpreter_options(command_line) == ["-B", "-u", "-W", "ignore"]


def test_options_keep_separate_values() -> None:
    """Value options keep their separate value tokens."""
    command_line: list[str] = ["python", "-X", "dev", "-W", "error", "-OO", "-m", "pytest", "-x"]
    assert interpreter_options(command_line) == ["-X", "dev", "-W", "error", "-O", "-O"]


def test_interactive_flag_is_dropped() -> None:
    """The interactive flag is never repeated for a child."""
    assert interpreter_options(["python", "-i", "-E", "-c", "print(1)"]) == ["-E"]


def test_option_cluster_ending_in_command_flag() -> None:
    """A cluster ending in ``c`` keeps the flags before it."""
    assert interpreter_options(["python", "-Ic", "print(1)"]) == ["-I"]


def test_long_options_are_preserved() -> None:
    """Long options keep their values."""
    command_line: list[str] = ["python", "--check-hash-based-pycs", "always", "-", "ignored"]
    assert interpreter_options(command_line) == ["--check-hash-based-pycs", "always"]


def test_parent_process_id_forms() -> None:
    """Verify both flag forms and malformed parent pids."""
    assert find_parent_process_id(["host", "--parentprocessid", "4242"]) == 4242
    assert find_parent_process_id(["host", "--port", "1", "--parentprocessid=77"]) == 77
    assert find_parent_process_id(["host", "--parentprocessid", "abc"]) is None
    assert find_parent_process_id(["host", "--parentprocessid"]) is None
    assert find_parent_process_id(["host"]) is None


def test_frozen_host_uses_sentinel_prefix() -> None:
    """Frozen hosts launch themselves with the sentinel and no command-line read."""
    plan: HostLaunchPlan = resolve_host_launch_plan(
        executable="C:\\apps\\tool.exe",
        frozen=True,
        read_command_line=_unreadable_command_line,
    )
    assert plan == HostLaunchPlan("frozen", "C:\\apps\\tool.exe", (EXEC_FUNCTION_COMMAND,))


def test_interpreter_host_repeats_options_and_bootstraps() -> None:
    """Interpreter hosts repeat their options and run the bootstrap."""
    plan: HostLaunchPlan = resolve_host_launch_plan(
        executable="/usr/bin/python3",
        frozen=False,
        read_command_line=lambda: ["/usr/bin/python3", "-X", "dev", "-B", "-m", "pytest", "-k", "x"],
    )
    assert plan.shape == "interpreter"
    assert plan.executable == "/usr/bin/python3"
    assert plan.prefix_arguments == ("-X", "dev", "-B", "-c", DISPATCH_BOOTSTRAP, dispatch_root())


def test_test_host_resolves_parent_interpreter() -> None:
    """A test host launches through its parent interpreter."""
    requested: list[int] = []

    def process_factory(pid: int) -> FakeProcess:
        requested.append(pid)
        return FakeProcess("/usr/bin/python3.12", ["/usr/bin/python3.12", "-u", "runner.py", "--fast"])

    plan: HostLaunchPlan = resolve_host_launch_plan(
        executable="/opt/tools/testhost",
        frozen=False,
        read_command_line=lambda: ["/opt/tools/testhost", "--port", "1", "--parentprocessid", "4242"],
        process_factory=process_factory,
    )
    assert requested == [4242]
    assert plan.shape == "test_host"
    assert plan.executable == "/usr/bin/python3.12"
    assert plan.prefix_arguments == ("-u", "-c", DISPATCH_BOOTSTRAP, dispatch_root())


def test_test_host_without_parent_flag_is_unsupported() -> None:
    """A test host without a parent pid flag is unsupported."""
    with pytest.raises(UnsupportedHostError, match="--parentprocessid"):
        resolve_host_launch_plan(
            executable="/opt/tools/testhost",
            frozen=False,
            read_command_line=lambda: ["/opt/tools/testhost", "--port", "1"],
        )


def test_test_host_with_vanished_parent_is_unsupported() -> None:
    """A parent that cannot be inspected makes the host unsupported."""
    def process_factory(pid: int) -> FakeProcess:
        raise psutil.NoSuchProcess(pid)

    with pytest.raises(UnsupportedHostError, match="4242") as exc_info:
        resolve_host_launch_plan(
            executable="/opt/tools/testhost",
            frozen=False,
            read_command_line=lambda: ["/opt/tools/testhost", "--parentprocessid=4242"],
            process_factory=process_factory,
        )
    assert isinstance(exc_info.value.__cause__, psutil.NoSuchProcess)


def test_test_host_with_foreign_parent_is_unsupported() -> None:
    """A parent that is not Python makes the host unsupported."""
    with pytest.raises(UnsupportedHostError, match="not a Python interpreter"):
        resolve_host_launch_plan(
            executable="/opt/tools/testhost",
            frozen=False,
            read_command_line=lambda: ["/opt/tools/testhost", "--parentprocessid", "9"],
            process_factory=lambda pid: FakeProcess("/usr/bin/dotnet", ["/usr/bin/dotnet", "test"]),
        )


def test_empty_executable_is_unsupported() -> None:
    """An unknown executable path is unsupported."""
    with pytest.raises(UnsupportedHostError, match="unknown"):
        resolve_host_launch_plan(executable="", frozen=False, read_command_line=_unreadable_command_line)


def test_process_plan_is_resolved_once(restore_cached_plan: None) -> None:
    """The process-wide plan is resolved once and reused."""
    host_module._HOST_PLAN = None
    host_module._HOST_PLAN_ERROR = None
    first: HostLaunchPlan = get_host_launch_plan()
    second: HostLaunchPlan = get_host_launch_plan()
    assert first is second
    assert first.shape == "interpreter"


def test_resolution_failure_is_cached(restore_cached_plan: None, monkeypatch: pytest.MonkeyPatch) -> None:
    """A resolution failure is cached and raised again."""
    calls: list[int] = []

    def failing_resolution() -> HostLaunchPlan:
        calls.append(1)
        raise UnsupportedHostError("no way to re-launch")

    host_module._HOST_PLAN = None
    host_module._HOST_PLAN_ERROR = None
    monkeypatch.setattr(host_module, "resolve_host_launch_plan", failing_resolution)
    for _ in range(2):
        with pytest.raises(UnsupportedHostError, match="no way"):
            get_host_launch_plan()
    assert calls == [1]
