"""Best-effort debugger attach for child processes.

Attaching is delegated to an external Visual Studio helper executable
(``VsDebugger.exe``), so it only works on Windows with the helper
installed.  Every failure degrades to "no debugger attached"; a child
never stops because of this module.

Configuration is read from environment variables:

- ``EXECFUNCTION_VSDEBUGGER``: path of the helper executable
- ``EXECFUNCTION_VS_DTE_VERSION``: DTE version such as ``17.0``; discovered
  with ``vswhere.exe`` when unset
"""

import os
import re
import subprocess
import sys
import threading
from collections.abc import Callable

from execfunction.logs import get_logger

logger = get_logger(__name__)

HELPER_PATH_ENV: str = "EXECFUNCTION_VSDEBUGGER"
DTE_VERSION_ENV: str = "EXECFUNCTION_VS_DTE_VERSION"
HELPER_TIMEOUT_SECONDS: float = 30.0
HELPER_SUCCESS_EXIT_CODE: int = 1
_VSWHERE_RELATIVE_PATH: str = os.path.join("Microsoft Visual Studio", "Installer", "vswhere.exe")
_INSTALLATION_VERSION_PATTERN: re.Pattern[str] = re.compile(
    r"^\s*installationVersion\s*:\s*(?P<major>\d+)(\.\d+)*\s*$",
    re.IGNORECASE,
)

# The helper registers a process-wide COM message filter while it drives the IDE.
_HELPER_LOCK: threading.Lock = threading.Lock()


def parse_dte_version(vswhere_output: str) -> str | None:
    """Extract the DTE version from ``vswhere.exe`` output.

    :param vswhere_output: Standard output of ``vswhere.exe``.
    :returns: Version such as ``"17.0"``, or ``None`` when no installation is listed.
    """
    for line in vswhere_output.splitlines():
        match: re.Match[str] | None = _INSTALLATION_VERSION_PATTERN.match(line)
        if match is not None:
            return f"{match.group('major')}.0"
    return None


class DebuggerAttacher:
    """Contract for asking an IDE to attach to or detach from a process."""

    @property
    def supported(self) -> bool:
        """Report whether this attacher can do anything on this machine.

        :returns: ``True`` when attach requests may succeed.
        """
        return False

    def attach(self, requester_pid: int, target_pid: int) -> bool:
        """Attach the debugger of ``requester_pid`` to ``target_pid``.

        :param requester_pid: Process whose debugger should be reused.
        :param target_pid: Process to attach to.
        :returns: ``True`` on success.
        """
        raise NotImplementedError

    def detach(self, target_pid: int) -> bool:
        """Detach any debugger from ``target_pid``.

        :param target_pid: Process to detach from.
        :returns: ``True`` on success.
        """
        raise NotImplementedError


class UnsupportedDebuggerAttacher(DebuggerAttacher):
    """Attacher for platforms without an automation surface."""

    reason: str

    def __init__(self, reason: str) -> None:
        """Initialize the attacher.

        :param reason: Why attaching is unavailable.
        """
        self.reason = reason

    def attach(self, requester_pid: int, target_pid: int) -> bool:
        logger.info(
            "execfunction.debugger.unsupported",
            reason=self.reason,
            requester_pid=requester_pid,
            target_pid=target_pid,
        )
        return False

    def detach(self, target_pid: int) -> bool:
        logger.info("execfunction.debugger.unsupported", reason=self.reason, target_pid=target_pid)
        return False


class VisualStudioDebuggerAttacher(DebuggerAttacher):
    """Drive Visual Studio through the ``VsDebugger.exe`` helper."""

    helper_path: str
    dte_version: str
    timeout: float
    _run: Callable[..., subprocess.CompletedProcess[str]]

    def __init__(
        self,
        helper_path: str,
        dte_version: str,
        timeout: float = HELPER_TIMEOUT_SECONDS,
        run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        """Initialize the attacher.

        :param helper_path: Path of ``VsDebugger.exe``.
        :param dte_version: Visual Studio DTE version, for example ``"17.0"``.
        :param timeout: Upper bound for one helper run in seconds.
        :param run: ``subprocess.run`` compatible callable.
        """
        self.helper_path = helper_path
        self.dte_version = dte_version
        self.timeout = timeout
        self._run = run

    @property
    def supported(self) -> bool:
        return True

    def _run_helper(self, arguments: list[str]) -> bool:
        """Run the helper once and report whether it succeeded.

        The helper exits with ``1`` on success and prints the failure otherwise.

        :param arguments: Helper arguments.
        :returns: ``True`` on success.
        """
        command: list[str] = [self.helper_path, *arguments]
        with _HELPER_LOCK:
            try:
                completed: subprocess.CompletedProcess[str] = self._run(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                logger.warning("execfunction.debugger.timeout", command=command, timeout=self.timeout)
                return False
            except OSError as exc:
                logger.warning("execfunction.debugger.helper_failed", command=command, error=str(exc))
                return False

        if completed.returncode != HELPER_SUCCESS_EXIT_CODE:
            logger.warning(
                "execfunction.debugger.rejected",
                command=command,
                returncode=completed.returncode,
                output=(completed.stdout or "").strip(),
            )
            return False
        return True

    def attach(self, requester_pid: int, target_pid: int) -> bool:
        return self._run_helper(
            [
                f"-pid:{target_pid}",
                f"-ppid:{requester_pid}",
                f"-dtev:{self.dte_version}",
                "-debugger:attach",
            ]
        )

    def detach(self, target_pid: int) -> bool:
        return self._run_helper(
            [
                f"-pid:{target_pid}",
                f"-dtev:{self.dte_version}",
                "-debugger:detach",
            ]
        )


def discover_dte_version(run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run) -> str | None:
    """Ask ``vswhere.exe`` for the installed Visual Studio version.

    :param run: ``subprocess.run`` compatible callable.
    :returns: DTE version, or ``None`` when ``vswhere.exe`` is missing or lists nothing.
    """
    program_files: str | None = os.environ.get("ProgramFiles(x86)")
    if program_files is None:
        return None
    vswhere_path: str = os.path.join(program_files, _VSWHERE_RELATIVE_PATH)
    if os.path.isfile(vswhere_path) is False:
        return None

    try:
        completed: subprocess.CompletedProcess[str] = run(
            [vswhere_path],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=HELPER_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("execfunction.debugger.vswhere_failed", path=vswhere_path, error=str(exc))
        return None
    return parse_dte_version(completed.stdout or "")


def select_debugger_attacher(platform: str | None = None) -> DebuggerAttacher:
    """Pick the attacher for this machine.

    :param platform: ``sys.platform`` style name; defaults to the current one.
    :returns: Attacher instance; never raises.
    """
    platform_name: str = sys.platform if platform is None else platform
    if platform_name != "win32":
        return UnsupportedDebuggerAttacher(f"debugger attach is only available on Windows, not {platform_name}")

    helper_path: str | None = os.environ.get(HELPER_PATH_ENV)
    if helper_path is None or os.path.isfile(helper_path) is False:
        return UnsupportedDebuggerAttacher(f"{HELPER_PATH_ENV} does not name a debugger helper executable")

    dte_version: str | None = os.environ.get(DTE_VERSION_ENV) or discover_dte_version()
    if dte_version is None:
        return UnsupportedDebuggerAttacher(f"no Visual Studio installation found; set {DTE_VERSION_ENV}")
    return VisualStudioDebuggerAttacher(helper_path, dte_version)


def try_attach_debugger(requester_pid: int, attacher: DebuggerAttacher | None = None) -> bool:
    """Attach the requester's debugger to the current process if possible.

    A process that already has a trace function (a debugger, but also a
    coverage tool) is left alone, and no attach is reported.

    :param requester_pid: Parent process whose debugger should attach.
    :param attacher: Attacher to use; selected for this machine when omitted.
    :returns: ``True`` when the helper attached a debugger.
    """
    if sys.gettrace() is not None:
        logger.info("execfunction.debugger.tracer_present", requester_pid=requester_pid, attached=False)
        return False

    selected: DebuggerAttacher = select_debugger_attacher() if attacher is None else attacher
    try:
        attached: bool = selected.attach(requester_pid, os.getpid())
    except Exception as exc:
        logger.warning("execfunction.debugger.attach_failed", requester_pid=requester_pid, error=str(exc))
        return False

    logger.debug("execfunction.debugger.attach", requester_pid=requester_pid, attached=attached)
    return attached
