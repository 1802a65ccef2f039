"""Operating-system primitives: subreaper, sibling forks, signal reset.

Reforking needs every mold and worker to be a direct child of the
monitor, even when a worker forks the next mold.  On Linux the monitor
becomes a *child subreaper*; a process that forks twice and lets the
middle process exit hands its grandchild to the monitor, which can then
``waitpid`` it like any other child.
"""

from __future__ import annotations

import ctypes
import os
import signal
import sys
from collections.abc import Callable

from refork.core.logging import get_logger

logger = get_logger(__name__)

PR_SET_CHILD_SUBREAPER = 36

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT, signal.SIGUSR2, signal.SIGCHLD)


def set_child_subreaper() -> bool:
    """Make this process the reaper of its orphaned descendants.

    Returns False where ``prctl(PR_SET_CHILD_SUBREAPER)`` is unavailable.
    """
    if not sys.platform.startswith("linux"):
        return False
    try:
        libc = ctypes.CDLL(None, use_errno=True)
        result = libc.prctl(PR_SET_CHILD_SUBREAPER, 1, 0, 0, 0)
    except (OSError, AttributeError) as exc:
        logger.warning("subreaper_unavailable", error=str(exc))
        return False
    if result != 0:
        logger.warning("subreaper_unavailable", errno=ctypes.get_errno())
        return False
    return True


def fork_child(child_main: Callable[[], None]) -> int:
    """Fork; the child runs *child_main* (which must not return). Returns the child pid."""
    pid = os.fork()
    if pid == 0:
        _run_and_exit(child_main)
    return pid


def fork_sibling(child_main: Callable[[], None]) -> None:
    """Fork a grandchild that the monitor (the subreaper) adopts.

    The intermediate process exits at once and is reaped here; the
    grandchild reports its own pid to the monitor.
    """
    middle = os.fork()
    if middle == 0:
        try:
            if os.fork() == 0:
                _run_and_exit(child_main)
        finally:
            os._exit(0)
    os.waitpid(middle, 0)


def _run_and_exit(child_main: Callable[[], None]) -> None:
    status = 1
    try:
        child_main()
    except SystemExit as exc:
        if exc.code is None:
            status = 0
        else:
            status = exc.code if isinstance(exc.code, int) else 1
    except Exception:
        logger.exception("child_crashed", pid=os.getpid())
    finally:
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except (OSError, ValueError):
                pass
        os._exit(status)


def reset_signals() -> None:
    """Restore default dispositions inherited from the monitor."""
    signal.set_wakeup_fd(-1)
    for signum in HANDLED_SIGNALS:
        signal.signal(signum, signal.SIG_DFL)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return False
    return True


def wakeup_pipe() -> tuple[int, int]:
    """Non-blocking pipe suitable for ``signal.set_wakeup_fd``."""
    read_fd, write_fd = os.pipe()
    os.set_blocking(read_fd, False)
    os.set_blocking(write_fd, False)
    return read_fd, write_fd


def drain(fd: int) -> None:
    while True:
        try:
            if not os.read(fd, 4096):
                return
        except (BlockingIOError, InterruptedError):
            return


__all__ = [
    "PR_SET_CHILD_SUBREAPER",
    "HANDLED_SIGNALS",
    "set_child_subreaper",
    "fork_child",
    "fork_sibling",
    "reset_signals",
    "pid_alive",
    "wakeup_pipe",
    "drain",
]
