# -*- coding: utf-8 -*-
# pydoit task file
# see https://pydoit.org/
# run from this dir with `doit`, or `doit list`, `doit help` etc. (pip install doit 1st)

from doit.action import CmdAction

TEST_DIR = "test/logic/"
HARDWARE_TEST_DIR = "test/hardware/"

_TEST_PARAMS = [
    {
        "name": "help",
        "long": "help",
        "default": False,
        "type": bool,
    },
    {
        "name": "keyword",
        "short": "k",
        "default": "",
    },
    {
        "name": "retry",
        "short": "r",
        "default": False,
        "type": bool,
    },
    {
        "name": "print_logs",
        "short": "p",
        "default": False,
        "type": bool,
    },
    {
        "name": "full_trace",
        "short": "f",
        "default": False,
        "type": bool,
    },
    {
        "name": "show_time",
        "short": "t",
        "default": False,
        "type": bool,
    },
]

_TEST_HELP = """echo '
{title}
{underline}

Filter Options:
  -k, --keyword TEXT    Only run test matching the keyword expression
                        Example: -k "dispatcher and not timeout"
  -r, --retry           Only run previously failed test

Output Options:
  -p, --print-logs      Print test logs to console instead of capturing
  -f, --full-trace      Show full traceback on errors
  -t, --show-time       Display duration of all test

Examples:
  doit {task}                     # Run the test
  doit {task} -k serializer       # Run test containing "serializer"
  doit {task} --retry --show-time # Rerun failed test with timing
  '"""


def _build_pytest_command(
    test_dir,
    keyword="",
    speed="",
    retry=False,
    print_logs=False,
    full_trace=False,
    show_time=False,
):
    """Helper function to build pytest commands for test tasks."""
    cmd = ["pytest"]

    # Add options
    if print_logs:
        cmd.append("--capture=no")
    if full_trace:
        cmd.append("--full-trace")
    if show_time:
        cmd.append("--durations=0")

    # Add common flags
    cmd.extend(["--color=yes", "-vv", "-x"])

    # Add filters
    if retry:
        cmd.append("--lf")
    if keyword:
        cmd.extend(["-k", keyword])
    if speed:
        if speed == "slow":
            cmd.extend(["-m", "slow"])
        elif speed in ["not slow", "fast"]:
            cmd.extend(["-m", '"not slow"'])
        elif speed == "all":
            pass
        else:
            raise ValueError(
                f"Invalid speed filter: {speed}. Use 'slow', 'not slow', 'fast', or 'all'"
            )

    # Add test directory
    cmd.append(test_dir)

    return " ".join(cmd)


def _test_task(task_name, title, speed, test_dir=TEST_DIR):
    def router(keyword, retry, print_logs, full_trace, show_time, help=False):
        if help:
            return _TEST_HELP.format(
                title=title, underline="=" * len(title), task=task_name
            )
        try:
            return _build_pytest_command(
                test_dir,
                keyword=keyword,
                speed=speed,
                retry=retry,
                print_logs=print_logs,
                full_trace=full_trace,
                show_time=show_time,
            )
        except ValueError as e:
            return f"echo 'Error: {str(e)}' && exit 1"

    return {
        "actions": [CmdAction(router)],
        "params": _TEST_PARAMS,
        "verbosity": 2,
    }


def task_install():
    """Install cd48 in editable mode, with the test extra"""
    return {
        "actions": ['pip install -e ".[test]"'],
        "verbosity": 2,
    }


def task_test():
    """Run the whole test suite (test in test/logic/)."""
    return _test_task("test", "Test Runner Help", "all")


def task_test_fast():
    """Run the test suite, skipping test marked slow."""
    return _test_task("test_fast", "Fast Test Runner Help", "fast")


def task_test_slow():
    """Run only the test marked slow."""
    return _test_task("test_slow", "Slow Test Runner Help", "slow")


def task_test_hardware():
    """Run the tests that need a CD48 plugged in (test/hardware/)."""
    return _test_task(
        "test_hardware", "Hardware Test Runner Help", "all", HARDWARE_TEST_DIR
    )


def task_format():
    """Format code using ruff."""

    def router(help=False):
        if help:
            return """echo '
Code Formatter Help
=================

This task runs the ruff formatter to ensure consistent code style:
- Sorts imports (ruff check --select I --fix)
- Formats code (ruff format)

Formats these locations:
- src/cd48/
- test/
- dodo.py

No options required - simply run:
  doit format
  '"""
        return " && ".join(
            [
                "ruff check --select I --fix src/cd48",
                "ruff format src/cd48",
                "ruff check --select I --fix test/",
                "ruff format test/",
                "ruff check --select I --fix dodo.py",
                "ruff format dodo.py",
            ]
        )

    return {
        "actions": [CmdAction(router)],
        "params": [
            {
                "name": "help",
                "long": "help",
                "default": False,
                "type": bool,
            },
        ],
        "verbosity": 2,
    }
