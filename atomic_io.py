"""JSON Store — atomic file writes and the background save writer."""

import atexit
import logging
import os
import queue
import threading
import time
import weakref
from pathlib import Path
from typing import Callable, Optional

from config import TEMP_SUFFIX
from errors import SaveError

logger = logging.getLogger("jsonstore.io")

ErrorCallback = Callable[[Exception], None]

_live_writers: "weakref.WeakSet" = weakref.WeakSet()


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TEMP_SUFFIX)


def atomic_write(path: Path, payload: bytes) -> None:
    """Write *payload* to ``<path>.tmp`` then rename it over *path*.

    The target is never observed half-written. A crash between the write and
    the rename leaves the ``.tmp`` sibling behind and the target untouched.
    Raises :class:`SaveError` on any OS failure.
    """
    path = Path(path)
    tmp = temp_path_for(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError as exc:
        raise SaveError(f"Could not write {tmp}: {exc}", path) from exc

    try:
        os.replace(tmp, path)
    except OSError as exc:
        try:
            os.remove(tmp)
        except OSError:
            logger.debug("Could not remove %s after failed rename", tmp)
        raise SaveError(f"Could not replace {path}: {exc}", path) from exc


def write_or_report(path: Path, payload: bytes, on_error: Optional[ErrorCallback] = None) -> bool:
    """:func:`atomic_write` that hands failures to *on_error* instead of raising."""
    try:
        atomic_write(path, payload)
    except SaveError as exc:
        logger.error("Save failed: %s", exc)
        if on_error:
            try:
                on_error(exc)
            except Exception:
                logger.exception("Save error handler raised")
        return False
    logger.debug("Saved %d bytes to %s", len(payload), path)
    return True


# ---------------------------------------------------------------------------
# SaveWriter
# ---------------------------------------------------------------------------

class SaveWriter:
    """Single daemon thread that performs queued atomic writes in order.

    :meth:`submit` returns immediately; callers that need the bytes on disk
    call :meth:`flush`. Writers still open at interpreter exit are drained
    by an ``atexit`` hook, so a script that just exits keeps its last save.
    One worker means two saves never race on the same ``.tmp`` file and the
    last save issued is the last one to land.
    """

    _STOP = object()

    def __init__(self, name: str = "JsonStoreWriter"):
        self._queue: "queue.Queue" = queue.Queue()
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._closed = False
        _live_writers.add(self)

    def _ensure_started(self):
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
                self._thread.start()

    def _run(self):
        while True:
            job = self._queue.get()
            try:
                if job is self._STOP:
                    return
                path, payload, on_error = job
                write_or_report(path, payload, on_error)
            finally:
                self._queue.task_done()

    def submit(self, path: Path, payload: bytes, on_error: Optional[ErrorCallback] = None) -> None:
        if self._closed:
            # Writer already stopped: fall back to writing inline.
            write_or_report(path, payload, on_error)
            return
        self._ensure_started()
        self._queue.put((Path(path), payload, on_error))

    @property
    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted write has completed.

        Returns False if *timeout* elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = None) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(self._STOP)
            self._thread.join(timeout)


@atexit.register
def _drain_live_writers():
    for writer in list(_live_writers):
        try:
            writer.flush()
            writer.close()
        except Exception:
            logger.exception("Could not drain save writer %s at exit", writer._name)
