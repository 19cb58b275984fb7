"""Recover the full command line of the current process.

``sys.argv`` hides the options consumed by the interpreter itself (``-X``,
``-W``, ``-O``, ...).  The readers below ask the operating system for the
command line it actually used, so those options can be repeated for a
child process.
"""

import ctypes
import ctypes.util
import os
import struct
import sys
import threading

from execfunction.codec import split_windows_command_line
from execfunction.errors import PlatformUnsupportedError
from execfunction.logs import get_logger

logger = get_logger(__name__)

_CTL_KERN: int = 1
_KERN_ARGMAX: int = 8
_KERN_PROCARGS2: int = 49
_KERN_PROC: int = 14
_KERN_PROC_ARGS: int = 7
_ARGC_SIZE: int = 4

_COMMAND_LINE_LOCK: threading.Lock = threading.Lock()
_COMMAND_LINE: tuple[str, ...] | None = None


def split_nul_separated(data: bytes) -> list[str]:
    """Split a NUL-delimited argument block.

    :param data: Raw bytes, one NUL after each argument.
    :returns: Decoded arguments without the trailing empty token.
    """
    parts: list[bytes] = data.split(b"\0")
    if len(parts) > 0 and parts[-1] == b"":
        parts.pop()
    return [os.fsdecode(part) for part in parts]


def parse_procargs2(buffer: bytes) -> list[str]:
    """Parse a ``KERN_PROCARGS2`` block.

    Layout: native ``int`` argument count, the executable path padded with
    NUL bytes, then ``argc`` NUL-terminated arguments, then the environment.

    :param buffer: Raw sysctl output.
    :returns: Argument vector including ``argv[0]``.
    :raises ValueError: If the buffer is truncated.
    """
    if len(buffer) < _ARGC_SIZE:
        raise ValueError("procargs buffer is too short for an argument count")

    argc: int = struct.unpack("=i", buffer[:_ARGC_SIZE])[0]
    length: int = len(buffer)
    index: int = _ARGC_SIZE

    while index < length and buffer[index] != 0:
        index += 1
    while index < length and buffer[index] == 0:
        index += 1

    arguments: list[str] = []
    while len(arguments) < argc:
        if index >= length:
            raise ValueError(f"procargs buffer ended after {len(arguments)} of {argc} arguments")
        end: int = buffer.find(b"\0", index)
        if end == -1:
            end = length
        arguments.append(os.fsdecode(buffer[index:end]))
        index = end + 1
    return arguments


class CommandLineReader:
    """Strategy that returns the command line of the current process."""

    name: str = "abstract"

    def read(self) -> list[str]:
        """Return the complete argument vector of the current process.

        :returns: Arguments including interpreter options.
        """
        raise NotImplementedError


class ProcfsCommandLineReader(CommandLineReader):
    """Read ``/proc/<pid>/cmdline``."""

    name = "procfs"
    _proc_root: str

    def __init__(self, proc_root: str = "/proc") -> None:
        """Initialize the reader.

        :param proc_root: Mount point of procfs.
        """
        self._proc_root = proc_root

    def is_available(self) -> bool:
        """Report whether procfs exposes the current process.

        :returns: ``True`` when the cmdline pseudo-file exists.
        """
        return os.path.exists(self._path())

    def _path(self) -> str:
        return os.path.join(self._proc_root, str(os.getpid()), "cmdline")

    def read(self) -> list[str]:
        with open(self._path(), "rb") as handle:
            data: bytes = handle.read()
        return split_nul_separated(data)


class WindowsCommandLineReader(CommandLineReader):
    """Split ``GetCommandLineW`` with the native rules."""

    name = "windows"

    def read(self) -> list[str]:
        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        get_command_line = kernel32.GetCommandLineW
        get_command_line.argtypes = []
        get_command_line.restype = ctypes.c_wchar_p
        command_line: str | None = get_command_line()
        if command_line is None:
            raise OSError(ctypes.get_last_error(), "GetCommandLineW returned NULL")
        return split_windows_command_line(command_line)


def _load_libc() -> ctypes.CDLL:
    """Load the C library with errno tracking.

    :returns: Loaded C library.
    """
    library_name: str | None = ctypes.util.find_library("c")
    return ctypes.CDLL(library_name, use_errno=True)


def _sysctl(libc: ctypes.CDLL, mib: list[int], size: int) -> bytes:
    """Run one ``sysctl`` read.

    :param libc: Loaded C library.
    :param mib: Management information base name.
    :param size: Output buffer size.
    :returns: Bytes written by the kernel.
    :raises OSError: If the call fails.
    """
    mib_array = (ctypes.c_int * len(mib))(*mib)
    buffer = ctypes.create_string_buffer(size)
    buffer_size = ctypes.c_size_t(size)
    result: int = libc.sysctl(mib_array, len(mib), buffer, ctypes.byref(buffer_size), None, ctypes.c_size_t(0))
    if result != 0:
        error_number: int = ctypes.get_errno()
        raise OSError(error_number, os.strerror(error_number))
    return buffer.raw[: buffer_size.value]


def _argmax(libc: ctypes.CDLL) -> int:
    """Return the kernel's maximum argument block size.

    :param libc: Loaded C library.
    :returns: ``KERN_ARGMAX`` value.
    """
    raw: bytes = _sysctl(libc, [_CTL_KERN, _KERN_ARGMAX], ctypes.sizeof(ctypes.c_int))
    return struct.unpack("=i", raw[: ctypes.sizeof(ctypes.c_int)])[0]


class DarwinCommandLineReader(CommandLineReader):
    """Query ``KERN_PROCARGS2`` on macOS."""

    name = "sysctl-procargs2"

    def read(self) -> list[str]:
        libc: ctypes.CDLL = _load_libc()
        size: int = _argmax(libc)
        raw: bytes = _sysctl(libc, [_CTL_KERN, _KERN_PROCARGS2, os.getpid()], size)
        return parse_procargs2(raw)


class FreeBSDCommandLineReader(CommandLineReader):
    """Query ``KERN_PROC_ARGS`` on FreeBSD-style kernels without procfs."""

    name = "sysctl-proc-args"

    def read(self) -> list[str]:
        libc: ctypes.CDLL = _load_libc()
        size: int = _argmax(libc)
        raw: bytes = _sysctl(libc, [_CTL_KERN, _KERN_PROC, _KERN_PROC_ARGS, os.getpid()], size)
        return split_nul_separated(raw)


def select_command_line_reader(platform: str | None = None, proc_root: str = "/proc") -> CommandLineReader:
    """Pick the command-line reader for ``platform``.

    :param platform: ``sys.platform`` style name; defaults to the current one.
    :param proc_root: Mount point of procfs.
    :returns: Reader strategy.
    :raises PlatformUnsupportedError: If no reader works on this platform.
    """
    platform_name: str = sys.platform if platform is None else platform
    if platform_name == "win32":
        return WindowsCommandLineReader()

    procfs_reader = ProcfsCommandLineReader(proc_root)
    if procfs_reader.is_available() is True:
        return procfs_reader

    if platform_name == "darwin":
        return DarwinCommandLineReader()
    if platform_name.startswith("freebsd") is True or platform_name.startswith("dragonfly") is True:
        return FreeBSDCommandLineReader()

    raise PlatformUnsupportedError(f"Reading the full command line is unsupported on {platform_name!r}")


def current_full_command_line() -> list[str]:
    """Return the full command line of the current process.

    The value is read once and cached for the life of the process.

    :returns: Copy of the cached argument vector.
    :raises PlatformUnsupportedError: If no reader works on this platform.
    """
    global _COMMAND_LINE
    with _COMMAND_LINE_LOCK:
        if _COMMAND_LINE is None:
            reader: CommandLineReader = select_command_line_reader()
            _COMMAND_LINE = tuple(reader.read())
            logger.debug("execfunction.cmdline.read", reader=reader.name, argc=len(_COMMAND_LINE))
        return list(_COMMAND_LINE)
