"""Subprocess runner for harness CLIs."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1
_STDERR_JOIN_SECONDS = 5.0


class BackendRunError(RuntimeError):
    """Harness process could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class ProcessRequest:
    """Everything needed to run one harness process."""

    argv: list[str]
    cwd: Path
    env: dict[str, str]
    stdout_path: Path
    stderr_path: Path
    stdin_path: Path | None = None
    timeout_seconds: float | None = None
    grace_seconds: float = 5.0
    stop_requested: Callable[[], str | None] | None = None
    stderr_echo: IO[str] | None = None


@dataclass(slots=True)
class ProcessOutcome:
    """Raw result of one harness process."""

    returncode: int | None
    timed_out: bool
    stop_signal: str | None
    duration_seconds: float


class CliHarnessBackend:
    """Run a harness with stdout captured to file and stderr tee'd."""

    def run(self, request: ProcessRequest) -> ProcessOutcome:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        stdin_source = request.stdin_path if request.stdin_path is not None else Path(os.devnull)
        with (
            stdin_source.open("r", encoding="utf-8") as stdin_handle,
            request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
            request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    request.argv,
                    cwd=request.cwd,
                    env=request.env,
                    stdin=stdin_handle,
                    stdout=stdout_handle,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"Harness executable not found: {request.argv[0]}",
                    transient=False,
                ) from error
            except PermissionError as error:
                raise BackendRunError(
                    f"Harness executable is not runnable: {request.argv[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"Harness failed to start: {error}",
                    transient=True,
                ) from error

            tee = threading.Thread(
                target=_pump_stream,
                args=(process.stderr, stderr_handle, request.stderr_echo),
                daemon=True,
            )
            tee.start()
            try:
                return _wait_with_shutdown(process, request)
            finally:
                tee.join(timeout=_STDERR_JOIN_SECONDS)


def _wait_with_shutdown(
    process: subprocess.Popen[str],
    request: ProcessRequest,
) -> ProcessOutcome:
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        elapsed = time.monotonic() - start_monotonic
        if returncode is not None:
            return ProcessOutcome(
                returncode=returncode,
                timed_out=False,
                stop_signal=None,
                duration_seconds=elapsed,
            )

        if request.timeout_seconds is not None and elapsed >= request.timeout_seconds:
            logger.info(
                "Harness timed out: pid=%s timeout_seconds=%s",
                process.pid,
                request.timeout_seconds,
            )
            _terminate_process(process, grace_seconds=request.grace_seconds)
            return ProcessOutcome(
                returncode=process.returncode,
                timed_out=True,
                stop_signal=None,
                duration_seconds=time.monotonic() - start_monotonic,
            )

        stop_signal = request.stop_requested() if request.stop_requested is not None else None
        if stop_signal is not None:
            logger.info("Stopping harness on %s: pid=%s", stop_signal, process.pid)
            _terminate_process(process, grace_seconds=request.grace_seconds)
            return ProcessOutcome(
                returncode=process.returncode,
                timed_out=False,
                stop_signal=stop_signal,
                duration_seconds=time.monotonic() - start_monotonic,
            )

        time.sleep(_POLL_INTERVAL_SECONDS)


def _pump_stream(stream: IO[str] | None, sink: IO[str], echo: IO[str] | None) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            sink.write(line)
            sink.flush()
            if echo is not None:
                try:
                    echo.write(line)
                    echo.flush()
                except (OSError, ValueError):
                    echo = None
    finally:
        stream.close()


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    """SIGTERM, wait out the grace period, then SIGKILL."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, 0.1))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=5)
