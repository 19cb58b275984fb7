"""Child process entry point for execfunction.

The child receives ``[--path ROOT]... MODULE TYPE METHOD ATTACH PID [ARGS...]``
(after any launch prefix), imports the named function, calls it and turns
the outcome into the process exit code.

Exit codes: the integer the function returns (``0`` for anything else),
``134`` for an unhandled exception and ``2`` for a malformed command line.
A function that itself returns ``2`` or ``134`` is indistinguishable from
those failures by exit code alone; the failures also write to stderr.
"""

import asyncio
import importlib
import inspect
import sys
import traceback
from collections.abc import Callable
from collections.abc import Sequence

from execfunction.builder import SEARCH_PATH_FLAG
from execfunction.builder import DebuggerAttachRequest
from execfunction.builder import FunctionIdentity
from execfunction.builder import InvocationRequest
from execfunction.builder import needs_instance
from execfunction.builder import resolve_qualname
from execfunction.debugger import try_attach_debugger
from execfunction.errors import ResolutionError
from execfunction.errors import UsageError
from execfunction.host import EXEC_FUNCTION_COMMAND
from execfunction.logs import configure_logging
from execfunction.logs import get_logger

logger = get_logger(__name__)

UNHANDLED_EXCEPTION_EXIT_CODE: int = 128 + 6
USAGE_ERROR_EXIT_CODE: int = 2
USAGE: str = "Usage: execfunction [--path ROOT]... MODULE TYPE METHOD [ATTACH_DEBUGGER REQUESTER_PID] [ARGS...]"
_BOOL_TOKENS: dict[str, bool] = {
    "true": True,
    "1": True,
    "false": False,
    "0": False,
}


def is_exec_function_command(argv: Sequence[str]) -> bool:
    """Report whether ``argv`` asks for a function dispatch.

    :param argv: Program arguments without the program name.
    :returns: ``True`` when the first argument is the dispatch sentinel.
    """
    return len(argv) >= 1 and argv[0] == EXEC_FUNCTION_COMMAND


def _parse_bool(token: str) -> bool:
    parsed: bool | None = _BOOL_TOKENS.get(token.lower())
    if parsed is None:
        raise UsageError(f"Invalid debugger attach flag: {token!r}")
    return parsed


def decode_invocation(argv: Sequence[str]) -> InvocationRequest:
    """Decode a child argument vector.

    :param argv: Program arguments without the program name.
    :returns: Decoded invocation request.
    :raises UsageError: If the function identity is missing or malformed.
    """
    tokens: list[str] = list(argv)
    if is_exec_function_command(tokens) is True:
        tokens = tokens[1:]

    search_paths: list[str] = []
    while len(tokens) > 0 and tokens[0] == SEARCH_PATH_FLAG:
        if len(tokens) < 2:
            raise UsageError(f"{SEARCH_PATH_FLAG} requires a directory")
        search_paths.append(tokens[1])
        tokens = tokens[2:]

    if len(tokens) < 3:
        raise UsageError(f"Expected module, type and method names, got {len(tokens)} argument(s)")

    identity = FunctionIdentity(tokens[0], tokens[1], tokens[2])
    remaining: list[str] = tokens[3:]

    attach_request = DebuggerAttachRequest()
    if len(remaining) == 1:
        raise UsageError("Debugger attach flag given without a requester process id")
    if len(remaining) >= 2:
        enabled: bool = _parse_bool(remaining[0])
        try:
            requester_pid: int = int(remaining[1])
        except ValueError as exc:
            raise UsageError(f"Invalid requester process id: {remaining[1]!r}") from exc
        attach_request = DebuggerAttachRequest(enabled=enabled, requester_pid=requester_pid)
        remaining = remaining[2:]

    return InvocationRequest(
        identity=identity,
        args=tuple(remaining),
        debugger_attach=attach_request,
        search_paths=tuple(search_paths),
    )


def _extend_sys_path(search_paths: Sequence[str]) -> None:
    """Prepend import roots that are not already on ``sys.path``.

    :param search_paths: Import roots from the parent.
    """
    for search_path in reversed(search_paths):
        if search_path not in sys.path:
            sys.path.insert(0, search_path)


def resolve_target(identity: FunctionIdentity) -> tuple[Callable[..., object], object | None]:
    """Find the function named by ``identity``.

    Plain functions defined on a class are bound to a new instance built
    without arguments.

    :param identity: Function identity.
    :returns: Tuple of ``(callable, instance_or_none)``.
    :raises ResolutionError: If the module, type or function cannot be found.
    """
    try:
        module: object = importlib.import_module(identity.module_name)
    except ImportError as exc:
        raise ResolutionError(f"Cannot import module {identity.module_name!r}") from exc

    if len(identity.type_name) == 0:
        try:
            function: object = getattr(module, identity.method_name)
        except AttributeError as exc:
            raise ResolutionError(
                f"Module {identity.module_name!r} has no function {identity.method_name!r}"
            ) from exc
        if callable(function) is False:
            raise ResolutionError(f"{identity.module_name}.{identity.method_name} is not callable")
        return function, None

    try:
        owner: object = resolve_qualname(module, identity.type_name)
    except AttributeError as exc:
        raise ResolutionError(f"Module {identity.module_name!r} has no type {identity.type_name!r}") from exc
    if isinstance(owner, type) is False:
        raise ResolutionError(f"{identity.module_name}.{identity.type_name} is not a class")

    has_method: bool = hasattr(owner, identity.method_name)
    if has_method is False:
        raise ResolutionError(f"Type {identity.type_name!r} has no method {identity.method_name!r}")

    if needs_instance(owner, identity.method_name) is False:
        return getattr(owner, identity.method_name), None

    instance: object = owner()
    return getattr(instance, identity.method_name), instance


def _close_instance(instance: object | None) -> None:
    if instance is None:
        return
    close: object = getattr(instance, "close", None)
    if callable(close) is True:
        close()


def _exit_code_from_result(result: object) -> int:
    """Map a function result to an exit code.

    :param result: Value returned (or awaited) from the target.
    :returns: The integer result, or ``0`` for anything else.
    """
    if isinstance(result, int) is True:
        return int(result)
    return 0


async def _await_result(awaitable: object) -> object:
    return await awaitable


def invoke_target(function: Callable[..., object], args: Sequence[str]) -> int:
    """Call the target and map its outcome to an exit code.

    :param function: Resolved target.
    :param args: User arguments.
    :returns: Exit code.
    """
    positional_kinds: tuple[object, ...] = (
        inspect.Parameter.POSITIONAL_ONLY,
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
        inspect.Parameter.VAR_POSITIONAL,
    )
    parameter_count: int = 0
    for parameter in inspect.signature(function).parameters.values():
        if parameter.kind in positional_kinds:
            parameter_count += 1

    if parameter_count == 0:
        result: object = function()
    else:
        result = function(list(args))

    if inspect.iscoroutine(result) is True:
        result = asyncio.run(result)
    elif inspect.isawaitable(result) is True:
        result = asyncio.run(_await_result(result))
    return _exit_code_from_result(result)


def dispatch(request: InvocationRequest) -> int:
    """Resolve and run the requested function.

    :param request: Decoded invocation request.
    :returns: Exit code for the child process.
    :raises ResolutionError: If the target cannot be found.
    """
    _extend_sys_path(request.search_paths)
    function, instance = resolve_target(request.identity)
    logger.debug(
        "execfunction.dispatch",
        module=request.identity.module_name,
        qualname=request.identity.qualname,
        argc=len(request.args),
    )
    try:
        return invoke_target(function, request.args)
    finally:
        _close_instance(instance)


def worker_entry(argv: Sequence[str]) -> int:
    """Run the child side of one invocation.

    :param argv: Program arguments without the program name.
    :returns: Exit code for the child process.
    """
    try:
        request: InvocationRequest = decode_invocation(argv)
    except UsageError as exc:
        sys.stderr.write(f"{USAGE}\n{exc}\n")
        return USAGE_ERROR_EXIT_CODE

    if request.debugger_attach.enabled is True:
        try_attach_debugger(request.debugger_attach.requester_pid)

    try:
        return dispatch(request)
    except Exception:
        sys.stderr.write("Unhandled exception: ")
        sys.stderr.write(traceback.format_exc())
        sys.stderr.flush()
        return UNHANDLED_EXCEPTION_EXIT_CODE


def main() -> None:
    """Process entry point used by ``python -m execfunction`` and the bootstrap."""
    configure_logging()
    sys.exit(worker_entry(sys.argv[1:]))


def run_if_requested(argv: Sequence[str] | None = None) -> None:
    """Dispatch and exit when a frozen application is started as a child.

    Call this first thing in the application's entry point.

    :param argv: Program arguments without the program name; defaults to ``sys.argv[1:]``.
    """
    arguments: Sequence[str] = sys.argv[1:] if argv is None else argv
    if is_exec_function_command(arguments) is False:
        return
    configure_logging()
    sys.exit(worker_entry(arguments))
