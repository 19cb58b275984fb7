"""In-process tests for the child entry point."""

import json
import sys
from pathlib import Path

import pytest

import tests.fixtures.function_targets as targets
from execfunction.builder import DebuggerAttachRequest
from execfunction.builder import FunctionIdentity
from execfunction.builder import InvocationRequest
from execfunction.builder import build_child_arguments
from execfunction.builder import build_invocation_request
from execfunction.errors import ResolutionError
from execfunction.errors import UsageError
from execfunction.host import EXEC_FUNCTION_COMMAND
from execfunction.host import HostLaunchPlan
from execfunction.worker import UNHANDLED_EXCEPTION_EXIT_CODE
from execfunction.worker import USAGE_ERROR_EXIT_CODE
from execfunction.worker import decode_invocation
from execfunction.worker import is_exec_function_command
from execfunction.worker import resolve_target
from execfunction.worker import run_if_requested
from execfunction.worker import worker_entry

TARGET_MODULE: str = "tests.fixtures.function_targets"


def _argv(type_name: str, method_name: str, *args: str) -> list[str]:
    """Build a child argument vector for a fixture target.

    :param type_name: Owner type name, empty for module functions.
    :param method_name: Function name.
    :param args: User arguments.
    :returns: Child arguments.
    """
    return [TARGET_MODULE, type_name, method_name, "false", "0", *args]


def test_decode_full_vector() -> None:
    """Decode a vector with sentinel, search roots and debugger fields."""
    request: InvocationRequest = decode_invocation(
        [EXEC_FUNCTION_COMMAND, "--path", "/src", "pkg.mod", "Owner", "method", "true", "12", "x", ""]
    )
    assert request == InvocationRequest(
        identity=FunctionIdentity("pkg.mod", "Owner", "method"),
        args=("x", ""),
        debugger_attach=DebuggerAttachRequest(enabled=True, requester_pid=12),
        search_paths=("/src",),
    )


def test_decode_without_debugger_fields_defaults_to_disabled() -> None:
    """Missing debugger fields default to no attach."""
    request: InvocationRequest = decode_invocation(["pkg.mod", "", "function"])
    assert request.debugger_attach == DebuggerAttachRequest()
    assert request.args == ()


def test_decode_reads_what_the_encoder_writes() -> None:
    """The decoder reads the encoder's layout back."""
    plan = HostLaunchPlan("frozen", "tool.exe", (EXEC_FUNCTION_COMMAND,))
    request: InvocationRequest = build_invocation_request(targets.echo_args, ["a b", '"q"', ""])
    decoded: InvocationRequest = decode_invocation(build_child_arguments(plan, request))
    assert decoded.identity == request.identity
    assert decoded.args == request.args
    assert decoded.debugger_attach == request.debugger_attach


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        ([], "got 0"),
        (["pkg.mod", "Owner"], "got 2"),
        (["--path"], "requires a directory"),
        (["pkg.mod", "", "function", "true"], "without a requester"),
        (["pkg.mod", "", "function", "maybe", "1"], "attach flag"),
        (["pkg.mod", "", "function", "true", "pid"], "requester process id"),
    ],
)
def test_decode_rejects_malformed_vectors(argv: list[str], message: str) -> None:
    """Malformed vectors raise ``UsageError``."""
    with pytest.raises(UsageError, match=message):
        decode_invocation(argv)


def test_sentinel_detection() -> None:
    """Verify detection of the dispatch sentinel."""
    assert is_exec_function_command([EXEC_FUNCTION_COMMAND, "pkg.mod"]) is True
    assert is_exec_function_command(["pkg.mod"]) is False
    assert is_exec_function_command([]) is False


def test_usage_error_exit_code(capsys: pytest.CaptureFixture[str]) -> None:
    """Usage errors exit with the usage code and print the usage line."""
    assert worker_entry(["only-one"]) == USAGE_ERROR_EXIT_CODE
    assert "Usage:" in capsys.readouterr().err


def test_integer_result_becomes_exit_code() -> None:
    """Integer results become the exit code."""
    assert worker_entry(_argv("", "return_forty_two")) == 42


def test_none_and_other_results_become_zero() -> None:
    """``None`` and non-integer results exit with zero."""
    assert worker_entry(_argv("", "return_nothing")) == 0
    assert worker_entry(_argv("", "return_text")) == 0


def test_async_result_is_awaited() -> None:
    """Coroutine results are awaited before mapping."""
    assert worker_entry(_argv("", "async_forty_two")) == 42


def test_arguments_reach_the_function(capsys: pytest.CaptureFixture[str]) -> None:
    """Arguments are passed as one list."""
    assert worker_entry(_argv("", "echo_args", "arg1", "two words", "")) == 3
    assert json.loads(capsys.readouterr().out) == ["arg1", "two words", ""]


def test_expected_arguments_fixture() -> None:
    """The two-argument fixture distinguishes matching arguments."""
    assert worker_entry(_argv("", "expect_two_args", "arg1", "arg2")) == 0
    assert worker_entry(_argv("", "expect_two_args", "arg1")) == 1


def test_static_and_class_methods() -> None:
    """Static, class and nested-type methods are called without an instance."""
    assert worker_entry(_argv("FixtureTargets", "static_method")) == 11
    assert worker_entry(_argv("FixtureTargets", "class_method")) == 12
    assert worker_entry(_argv("FixtureTargets.Nested", "nested_method")) == 14


def test_instance_method_runs_on_fresh_instance_and_closes_it(capsys: pytest.CaptureFixture[str]) -> None:
    """Plain methods run on a fresh instance that is closed afterwards."""
    assert worker_entry(_argv("FixtureTargets", "instance_method")) == 13
    assert capsys.readouterr().out == "called\nclosed\n"


def test_unhandled_exception_exit_code(capsys: pytest.CaptureFixture[str]) -> None:
    """Unhandled exceptions exit with 134 and print the traceback."""
    assert worker_entry(_argv("", "raise_fault")) == UNHANDLED_EXCEPTION_EXIT_CODE
    stderr: str = capsys.readouterr().err
    assert stderr.startswith("Unhandled exception: ")
    assert "FixtureFault: fixture fault" in stderr


def test_missing_target_is_an_unhandled_fault(capsys: pytest.CaptureFixture[str]) -> None:
    """A missing target is reported like any other fault."""
    assert worker_entry(_argv("", "does_not_exist")) == UNHANDLED_EXCEPTION_EXIT_CODE
    assert "ResolutionError" in capsys.readouterr().err


def test_system_exit_propagates() -> None:
    """``SystemExit`` from the target is not swallowed."""
    with pytest.raises(SystemExit) as exc_info:
        worker_entry(_argv("", "exit_with_code", "3"))
    assert exc_info.value.code == 3


def test_resolution_errors() -> None:
    """Verify each resolution failure message."""
    with pytest.raises(ResolutionError, match="Cannot import"):
        resolve_target(FunctionIdentity("tests.fixtures.no_such_module", "", "f"))
    with pytest.raises(ResolutionError, match="has no type"):
        resolve_target(FunctionIdentity(TARGET_MODULE, "Missing", "f"))
    with pytest.raises(ResolutionError, match="has no method"):
        resolve_target(FunctionIdentity(TARGET_MODULE, "FixtureTargets", "missing"))
    with pytest.raises(ResolutionError, match="not a class"):
        resolve_target(FunctionIdentity(TARGET_MODULE, "return_forty_two", "__call__"))


def test_search_paths_are_prepended(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Search roots are prepended to ``sys.path``."""
    monkeypatch.setattr(sys, "path", list(sys.path))
    root: str = str(tmp_path)
    assert worker_entry(["--path", root, *_argv("", "return_forty_two")]) == 42
    assert sys.path[0] == root


def test_run_if_requested_ignores_normal_startup() -> None:
    """Normal startup arguments are left alone."""
    run_if_requested(["--verbose"])


def test_run_if_requested_exits_with_function_code() -> None:
    """A sentinel command line exits with the function's code."""
    with pytest.raises(SystemExit) as exc_info:
        run_if_requested([EXEC_FUNCTION_COMMAND, *_argv("", "return_forty_two")])
    assert exc_info.value.code == 42
