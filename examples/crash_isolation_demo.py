"""Show that execfunction contains crashes and environment changes in a child."""

import argparse
import os
import pathlib
import sys

DEMO_VARIABLE: str = "EXECFUNCTION_DEMO_STATE"


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def crash_hard() -> int:
    """Fail with an unhandled exception.

    :raises RuntimeError: Always.
    """
    raise RuntimeError("simulated crash inside the child")


def mutate_environment(args: list[str]) -> int:
    """Change process-global state and report whether it was clean before.

    :param args: Value to store in the demo variable.
    :returns: ``0`` when the variable was unset on entry, ``1`` otherwise.
    """
    was_clean: bool = DEMO_VARIABLE not in os.environ
    os.environ[DEMO_VARIABLE] = args[0]
    if was_clean is True:
        return 0
    return 1


async def count_args(args: list[str]) -> int:
    """Return the number of arguments from a coroutine.

    :param args: Arbitrary arguments.
    :returns: Argument count.
    """
    return len(args)


def _parse_args() -> argparse.Namespace:
    """Parse command-line flags.

    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--rounds", type=int, default=2, help="How many environment mutations to run.")
    parser.add_argument("--log-level", default=None, help="Log level for execfunction diagnostics.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args()
    src_path: str = str(pathlib.Path(__file__).resolve().parent.parent / "src")
    _ensure_src_path(src_path)

    from execfunction import LaunchOptions
    from execfunction import run
    from execfunction import run_async
    from execfunction.logs import configure_logging

    if args.log_level is not None:
        configure_logging(args.log_level)

    def capture_stderr(options: LaunchOptions) -> None:
        options.redirect_stderr = True
        options.on_exit = lambda child: print(f"child {child.pid} stderr tail: {child.stderr.splitlines()[-1]}")

    crash_code: int = run(crash_hard, configure=capture_stderr)
    print(f"crash_hard exited with {crash_code}; the parent is still running")

    failures: int = 0
    for round_index in range(int(args.rounds)):
        code: int = run(mutate_environment, [f"round-{round_index}"])
        print(f"mutate_environment round {round_index} saw a clean environment: {code == 0}")
        if code != 0:
            failures += 1
    print(f"parent {DEMO_VARIABLE}={os.environ.get(DEMO_VARIABLE)!r}")

    future = run_async(count_args, ["a", "b c", ""])
    print(f"count_args resolved to {future.result()}")

    if failures > 0 or crash_code == 0:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
