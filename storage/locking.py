from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple


Stamp = Optional[Tuple[int, int, int]]


def file_stamp(path: Optional[str]) -> Stamp:
    """Identity of the file currently at ``path``; every atomic replace changes it."""
    if not path:
        return None
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


@contextmanager
def file_lock(path: Optional[str]) -> Iterator[None]:
    """Exclusive advisory lock on ``<path>.lock`` shared by every process using the store."""
    if not path:
        yield
        return
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path + '.lock', 'a') as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
