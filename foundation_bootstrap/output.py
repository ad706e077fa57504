"""
Console output helpers.

Every command prints line-oriented progress using the same markers:

    [+] success    [-] error    [!] warning    [DRY-RUN] suppressed action

Lines are written under a lock so output from worker threads does not
interleave mid-line.
"""

import sys
import threading

_lock = threading.Lock()
_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    return _verbose


def _emit(line: str, stream=None) -> None:
    with _lock:
        print(line, file=stream or sys.stdout, flush=True)


def banner(title: str) -> None:
    """Print a framed title, used at the start and end of each command."""
    _emit("=" * 60)
    _emit(title)
    _emit("=" * 60)


def step(number: int, total: int, title: str) -> None:
    _emit("")
    _emit(f"[{number}/{total}] {title}")
    _emit("-" * 60)


def section(title: str) -> None:
    _emit(f"{title}...")


def info(message: str) -> None:
    _emit(f"  {message}")


def success(message: str) -> None:
    _emit(f"  [+] {message}")


def warn(message: str) -> None:
    _emit(f"  [!] {message}")


def error(message: str) -> None:
    _emit(f"  [-] {message}", stream=sys.stderr)


def debug(message: str) -> None:
    if _verbose:
        _emit(f"  [DEBUG] {message}")


def dry_run(message: str) -> None:
    _emit(f"  [DRY-RUN] Would {message}")


def summary(title: str, rows: list) -> None:
    """Print a PASS/FAIL table from (label, passed) pairs."""
    _emit("")
    banner(title)
    for label, passed in rows:
        status = "[PASS]" if passed else "[FAIL]"
        _emit(f"  {status} {label}")
    passed_count = sum(1 for _, passed in rows if passed)
    _emit("")
    _emit(f"  {passed_count}/{len(rows)} passed")
    _emit("=" * 60)
