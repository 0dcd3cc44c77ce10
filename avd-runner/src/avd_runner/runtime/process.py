from __future__ import annotations

import os


def is_process_alive(pid: int) -> bool:
    """Signal-0 probe: no side effects, never blocks."""

    if pid is None or int(pid) <= 0:
        return False
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True
