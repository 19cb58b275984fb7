"""User-facing API entrypoints for execfunction."""

import concurrent.futures
from collections.abc import Callable
from collections.abc import Sequence

from execfunction.runtime import ChildProcess
from execfunction.runtime import ConfigureStep
from execfunction.runtime import FunctionExecutor

_DEFAULT_EXECUTOR: FunctionExecutor = FunctionExecutor()


def start(
    function: Callable[..., object],
    args: Sequence[str] | None = None,
    configure: ConfigureStep | None = None,
) -> ChildProcess:
    """Start ``function`` in a separate process and return its handle.

    :param function: Module-level function, static method, class method or
        stateless method to run in the child.
    :param args: Optional string arguments handed to the function as one list.
    :param configure: Optional step adjusting :class:`~execfunction.runtime.LaunchOptions`.
    :returns: Handle of the started child; the caller must close it.
    """
    return _DEFAULT_EXECUTOR.start(function, args, configure)


def run(
    function: Callable[..., object],
    args: Sequence[str] | None = None,
    configure: ConfigureStep | None = None,
) -> int:
    """Run ``function`` in a separate process and return its exit code.

    :param function: Function to run in the child.
    :param args: Optional string arguments.
    :param configure: Optional launch configuration step.
    :returns: Child exit code.
    """
    return _DEFAULT_EXECUTOR.run(function, args, configure)


def run_async(
    function: Callable[..., object],
    args: Sequence[str] | None = None,
    configure: ConfigureStep | None = None,
) -> "concurrent.futures.Future[int]":
    """Run ``function`` in a separate process without blocking.

    :param function: Function to run in the child.
    :param args: Optional string arguments.
    :param configure: Optional launch configuration step.
    :returns: Future resolving to the child exit code.
    """
    return _DEFAULT_EXECUTOR.run_async(function, args, configure)
