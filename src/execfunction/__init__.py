"""Public package API for execfunction."""

from execfunction.api import run
from execfunction.api import run_async
from execfunction.api import start
from execfunction.errors import ExecFunctionError
from execfunction.errors import InvocationFault
from execfunction.errors import LaunchError
from execfunction.errors import PlatformUnsupportedError
from execfunction.errors import ResolutionError
from execfunction.errors import UnsupportedHostError
from execfunction.errors import UsageError
from execfunction.runtime import ChildProcess
from execfunction.runtime import FunctionExecutor
from execfunction.runtime import LaunchOptions
from execfunction.runtime import redirect_stdio
from execfunction.worker import run_if_requested

__all__: list[str] = [
    "run",
    "run_async",
    "start",
    "run_if_requested",
    "redirect_stdio",
    "ChildProcess",
    "FunctionExecutor",
    "LaunchOptions",
    "ExecFunctionError",
    "InvocationFault",
    "LaunchError",
    "PlatformUnsupportedError",
    "ResolutionError",
    "UnsupportedHostError",
    "UsageError",
]
