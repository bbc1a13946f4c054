"""Append-only run index with cross-process locking."""

from __future__ import annotations

import errno
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from run_agent.config import RunContext
from run_agent.contracts import RecordDecodeError, decode_record, encode_record
from run_agent.models import IndexRecord

logger = logging.getLogger(__name__)

_FLOCK_POLL_SECONDS = 0.05
_LOCKDIR_INITIAL_BACKOFF_SECONDS = 0.01
_LOCKDIR_MAX_BACKOFF_SECONDS = 0.25
# flock(2) on some network filesystems fails with these instead of blocking.
_FLOCK_UNSUPPORTED_ERRNOS = frozenset(
    {errno.ENOLCK, errno.EOPNOTSUPP, errno.ENOSYS, errno.EINVAL},
)


@dataclass(slots=True)
class IndexLine:
    """One physical index line and its decoded record, when decodable."""

    line_number: int
    raw: str
    record: IndexRecord | None


@contextmanager
def index_lock(context: RunContext, *, shared: bool = False) -> Iterator[bool]:
    """Hold the index lock; yields False when proceeding unlocked after timeout."""

    context.index_dir.mkdir(parents=True, exist_ok=True)
    with context.lock_path.open("a", encoding="utf-8") as handle:
        acquired = _acquire_flock(
            handle,
            shared=shared,
            timeout_seconds=context.lock_timeout_seconds,
        )
        if acquired is None:
            with directory_lock(context) as locked:
                yield locked
            return
        if not acquired:
            logger.warning(
                "Index lock %s not acquired within %.1fs; proceeding unlocked",
                context.lock_path,
                context.lock_timeout_seconds,
            )
        try:
            yield acquired
        finally:
            if acquired:
                _release_flock(handle)


@contextmanager
def directory_lock(context: RunContext) -> Iterator[bool]:
    """Mutual exclusion through atomic directory creation, with bounded backoff."""

    deadline = time.monotonic() + context.lock_timeout_seconds
    backoff = _LOCKDIR_INITIAL_BACKOFF_SECONDS
    while True:
        try:
            context.lock_dir_path.mkdir(parents=False)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                logger.warning(
                    "Index lock directory %s held beyond %.1fs; proceeding unlocked",
                    context.lock_dir_path,
                    context.lock_timeout_seconds,
                )
                yield False
                return
            time.sleep(backoff)
            backoff = min(backoff * 2, _LOCKDIR_MAX_BACKOFF_SECONDS)
    try:
        yield True
    finally:
        try:
            context.lock_dir_path.rmdir()
        except OSError as error:
            logger.warning(
                "Failed to release index lock directory %s: %s",
                context.lock_dir_path,
                error,
            )


def _acquire_flock(handle: IO[str], *, shared: bool, timeout_seconds: float) -> bool | None:
    """True when locked, False on timeout, None when flock is unavailable."""

    if os.name == "nt":
        return None
    import fcntl

    operation = (fcntl.LOCK_SH if shared else fcntl.LOCK_EX) | fcntl.LOCK_NB
    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            fcntl.flock(handle.fileno(), operation)
            return True
        except BlockingIOError:
            if time.monotonic() >= deadline:
                return False
            time.sleep(_FLOCK_POLL_SECONDS)
        except OSError as error:
            if error.errno in _FLOCK_UNSUPPORTED_ERRNOS:
                logger.debug("flock unavailable on %s: %s", handle.name, error)
                return None
            raise


def _release_flock(handle: IO[str]) -> None:
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class RunIndex:
    """Writer and reader for `index/runs.jsonl` and its archive files."""

    def __init__(self, context: RunContext) -> None:
        self.context = context

    def append(self, record: IndexRecord) -> None:
        """Append exactly one line under the exclusive lock."""

        line = encode_record(record) + "\n"
        with (
            index_lock(self.context),
            self.context.index_path.open("a", encoding="utf-8") as handle,
        ):
            handle.write(line)
            handle.flush()

    def read_records(self, *, include_archive: bool = False) -> list[IndexRecord]:
        """Decoded records in log order, archive files first; malformed lines skipped."""

        paths = [self.context.index_path]
        if include_archive:
            paths = [*self.archive_paths(), *paths]
        if not any(path.exists() for path in paths):
            return []
        records: list[IndexRecord] = []
        with index_lock(self.context, shared=True):
            for path in paths:
                records.extend(
                    line.record for line in read_index_lines(path) if line.record is not None
                )
        return records

    def archive_paths(self) -> list[Path]:
        if not self.context.archive_dir.is_dir():
            return []
        return sorted(self.context.archive_dir.glob("*.jsonl"))


def read_index_lines(path: Path) -> list[IndexLine]:
    """Read one log file without locking; callers hold the lock when it matters."""

    try:
        text = path.read_text("utf-8")
    except FileNotFoundError:
        return []
    lines: list[IndexLine] = []
    for line_number, raw in enumerate(text.splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            record: IndexRecord | None = decode_record(raw)
        except RecordDecodeError as error:
            logger.warning("Skipping malformed index line %s:%s: %s", path, line_number, error)
            record = None
        lines.append(IndexLine(line_number=line_number, raw=raw, record=record))
    return lines
