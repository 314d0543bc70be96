"""Subprocess-based executor with streamed stdout and two independent timeouts."""

from __future__ import annotations

import codecs
import logging
import queue
import subprocess
import threading
import time
from typing import IO

from headless_agents.runtime.backend.base import (
    BackendRunError,
    ProcessRunRequest,
    ProcessRunResult,
)
from headless_agents.runtime.failure_classifier import TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_READ_SIZE = 65_536
_STREAM_CLOSED = object()


class SubprocessExecutor:
    """Run argv without a shell, feeding decoded stdout fragments as they arrive.

    Fragments are delivered on the calling thread in arrival order.  The run is
    bounded by ``timeout_seconds`` of wall-clock time and, when set, by
    ``idle_timeout_seconds`` between stdout fragments.
    """

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        if not request.cwd.is_dir():
            raise BackendRunError(
                f"CLI backend working directory does not exist: {request.cwd}",
                transient=False,
            )
        try:
            process = subprocess.Popen(  # noqa: S603
                list(request.argv),
                cwd=request.cwd,
                env=request.env,
                stdin=subprocess.PIPE if request.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {request.argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        try:
            return self._communicate(process, request)
        finally:
            if process.poll() is None:
                _terminate_process(process)

    def _communicate(
        self,
        process: subprocess.Popen[bytes],
        request: ProcessRunRequest,
    ) -> ProcessRunResult:
        chunks: queue.Queue[object] = queue.Queue()
        stderr_parts: list[bytes] = []
        threads = [
            threading.Thread(target=_pump_stdout, args=(process.stdout, chunks), daemon=True),
            threading.Thread(target=_drain, args=(process.stderr, stderr_parts), daemon=True),
        ]
        if request.stdin is not None:
            threads.append(
                threading.Thread(
                    target=_feed_stdin,
                    args=(process.stdin, request.stdin),
                    daemon=True,
                ),
            )
        for thread in threads:
            thread.start()

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stdout_parts: list[str] = []
        started = time.monotonic()
        last_activity = started
        timed_out = False

        while True:
            try:
                item = chunks.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                item = None
            now = time.monotonic()
            if item is _STREAM_CLOSED:
                break
            if isinstance(item, bytes):
                last_activity = now
                text = decoder.decode(item)
                if text:
                    stdout_parts.append(text)
                    if request.on_stdout_chunk is not None:
                        request.on_stdout_chunk(text)
            if now - started >= request.timeout_seconds:
                logger.warning("CLI backend exceeded total timeout of %ss", request.timeout_seconds)
                timed_out = True
                break
            idle_limit = request.idle_timeout_seconds
            if idle_limit and now - last_activity >= idle_limit:
                logger.warning("CLI backend produced no output for %ss", idle_limit)
                timed_out = True
                break

        if not timed_out:
            remaining = max(0.0, request.timeout_seconds - (time.monotonic() - started))
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                timed_out = True
        if timed_out:
            _terminate_process(process)

        tail = decoder.decode(b"", final=True)
        if tail:
            stdout_parts.append(tail)
            if request.on_stdout_chunk is not None:
                request.on_stdout_chunk(tail)
        for thread in threads:
            thread.join(timeout=2)

        stderr = b"".join(stderr_parts).decode("utf-8", errors="replace")
        return ProcessRunResult(
            exit_code=TIMEOUT_EXIT_CODE if timed_out else process.returncode,
            stdout="".join(stdout_parts),
            stderr=stderr,
            timed_out=timed_out,
        )


def _pump_stdout(stream: IO[bytes], chunks: queue.Queue[object]) -> None:
    try:
        while True:
            data = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            chunks.put(data)
    finally:
        chunks.put(_STREAM_CLOSED)


def _drain(stream: IO[bytes], sink: list[bytes]) -> None:
    for data in iter(lambda: stream.read(_READ_SIZE), b""):
        sink.append(data)


def _feed_stdin(stream: IO[bytes], text: str) -> None:
    try:
        stream.write(text.encode("utf-8"))
        stream.close()
    except BrokenPipeError:
        # Process exited before reading its input; the exit code reports it.
        return


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
