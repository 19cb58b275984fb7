"""Argument quoting for child command lines.

The codec is the single quoting authority for the package.  On Windows the
child receives one command-line string that its C runtime splits back into
``argv``; :class:`WindowsArgumentCodec` produces strings that survive that
split unchanged.  On POSIX systems the child is created from an explicit
argument vector, so :class:`PosixArgumentCodec` only renders a display
string and hands the vector to ``subprocess`` untouched.
"""

import shlex
import sys
from collections.abc import Sequence

_WINDOWS_SEPARATORS: str = " \t"


def _needs_windows_quoting(argument: str) -> bool:
    """Report whether ``argument`` must be wrapped in quotes.

    :param argument: Raw argument.
    :returns: ``True`` when the argument is empty or holds whitespace or quotes.
    """
    if len(argument) == 0:
        return True
    for char in argument:
        if char.isspace() is True or char == '"':
            return True
    return False


def quote_windows_argument(argument: str) -> str:
    """Quote one argument for the Windows ``argv`` splitting rules.

    :param argument: Raw argument.
    :returns: Token that splits back into exactly ``argument``.
    """
    if _needs_windows_quoting(argument) is False:
        return argument

    parts: list[str] = ['"']
    index: int = 0
    length: int = len(argument)
    while index < length:
        char: str = argument[index]
        index += 1

        if char == "\\":
            backslash_count: int = 1
            while index < length and argument[index] == "\\":
                index += 1
                backslash_count += 1

            if index == length:
                # The closing quote follows: every backslash is doubled.
                parts.append("\\" * (backslash_count * 2))
            elif argument[index] == '"':
                parts.append("\\" * (backslash_count * 2 + 1))
                parts.append('"')
                index += 1
            else:
                parts.append("\\" * backslash_count)
            continue

        if char == '"':
            parts.append('\\"')
            continue

        parts.append(char)

    parts.append('"')
    return "".join(parts)


def quote_executable(path: str) -> str:
    """Quote the program path that starts a Windows command line.

    The loader reads the first token without backslash escapes, so a quote
    inside the path cannot be represented.

    :param path: Executable path.
    :returns: Quoted or literal path token.
    :raises ValueError: If ``path`` contains a quote character.
    """
    if '"' in path:
        raise ValueError(f"Executable path cannot contain a quote character: {path!r}")
    if len(path) == 0:
        return '""'
    for char in path:
        if char.isspace() is True:
            return f'"{path}"'
    return path


def split_windows_command_line(command_line: str) -> list[str]:
    """Split a Windows command line the way the C runtime builds ``argv``.

    The first token follows the program-name rule (quotes delimit, no
    escapes).  The remaining tokens follow the backslash rules: ``2n``
    backslashes before a quote become ``n`` and toggle quoting, ``2n + 1``
    become ``n`` plus a literal quote, other backslashes are literal, and
    ``""`` inside a quoted region is a literal quote.

    :param command_line: Raw command-line string.
    :returns: Argument vector including the program name.
    """
    arguments: list[str] = []
    length: int = len(command_line)
    index: int = 0

    if length == 0:
        return arguments

    program: list[str] = []
    if command_line[0] == '"':
        index = 1
        while index < length and command_line[index] != '"':
            program.append(command_line[index])
            index += 1
        index += 1
    else:
        while index < length and command_line[index] not in _WINDOWS_SEPARATORS:
            program.append(command_line[index])
            index += 1
    arguments.append("".join(program))

    while True:
        while index < length and command_line[index] in _WINDOWS_SEPARATORS:
            index += 1
        if index >= length:
            return arguments

        current: list[str] = []
        in_quotes: bool = False
        while index < length:
            char: str = command_line[index]

            if char == "\\":
                backslash_count: int = 0
                while index < length and command_line[index] == "\\":
                    backslash_count += 1
                    index += 1
                if index < length and command_line[index] == '"':
                    current.append("\\" * (backslash_count // 2))
                    if backslash_count % 2 == 1:
                        current.append('"')
                        index += 1
                else:
                    current.append("\\" * backslash_count)
                continue

            if char == '"':
                if in_quotes is True and index + 1 < length and command_line[index + 1] == '"':
                    current.append('"')
                    index += 2
                    continue
                in_quotes = not in_quotes
                index += 1
                continue

            if in_quotes is False and char in _WINDOWS_SEPARATORS:
                break

            current.append(char)
            index += 1

        arguments.append("".join(current))


class ArgumentCodec:
    """Strategy that turns argument vectors into launchable commands."""

    name: str = "abstract"

    def encode(self, args: Sequence[str]) -> str:
        """Render ``args`` as one command-line string.

        :param args: Arguments to encode.
        :returns: Encoded command-line fragment.
        """
        raise NotImplementedError

    def build_command(self, executable: str, args: Sequence[str]) -> str | list[str]:
        """Build the value handed to ``subprocess.Popen``.

        :param executable: Program to start.
        :param args: Arguments after the program name.
        :returns: Command string or argument vector.
        """
        raise NotImplementedError

    def display(self, executable: str, args: Sequence[str]) -> str:
        """Render a full command line for logs and error messages.

        :param executable: Program to start.
        :param args: Arguments after the program name.
        :returns: Human-readable command line.
        """
        command: str | list[str] = self.build_command(executable, args)
        if isinstance(command, str) is True:
            return command
        return self.encode(command)


class WindowsArgumentCodec(ArgumentCodec):
    """Quote arguments for ``CreateProcess`` and the C runtime splitter."""

    name = "windows"

    def encode(self, args: Sequence[str]) -> str:
        return " ".join(quote_windows_argument(argument) for argument in args)

    def build_command(self, executable: str, args: Sequence[str]) -> str:
        program: str = quote_executable(executable)
        if len(args) == 0:
            return program
        return f"{program} {self.encode(args)}"


class PosixArgumentCodec(ArgumentCodec):
    """Pass argument vectors through; quote only for display."""

    name = "posix"

    def encode(self, args: Sequence[str]) -> str:
        return shlex.join(args)

    def build_command(self, executable: str, args: Sequence[str]) -> list[str]:
        return [executable, *args]


def select_argument_codec(platform: str | None = None) -> ArgumentCodec:
    """Pick the codec for ``platform``.

    :param platform: ``sys.platform`` style name; defaults to the current one.
    :returns: Codec instance.
    """
    platform_name: str = sys.platform if platform is None else platform
    if platform_name == "win32":
        return WindowsArgumentCodec()
    return PosixArgumentCodec()
