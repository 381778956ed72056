"""Process liveness checks used by ghost detection."""
from __future__ import annotations

import errno
import os
import socket


def current_host() -> str:
    return socket.gethostname()


def process_alive(pid: int) -> bool:
    """Return True if pid refers to a running process on this machine.

    Only a definite "no such process" answer counts as dead. Any lookup we
    cannot perform reports the process as alive so a live holder is never
    reclaimed.
    """
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill on Windows terminates the target; there is no signal 0 probe
        return True
    try:
        os.kill(pid, 0)  # signal 0 = existence check, nothing sent
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user.
        return True
    except OSError as e:
        return e.errno != errno.ESRCH
