"""
Subprocess runner shared by all execution backends.

The child gets its own session/process group so termination reaches every
process it spawned. Stop conditions (hard timeout, caller cancellation,
KeyboardInterrupt) escalate SIGTERM -> SIGKILL after a grace period.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

POLL_INTERVAL_S = 0.1


@dataclass
class ProcessOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0


def terminate_process_group(proc: subprocess.Popen, grace_s: float = 5) -> None:
    """SIGTERM the whole group, then SIGKILL whatever is left after grace_s."""
    if proc.poll() is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_s)
        return
    except subprocess.TimeoutExpired:
        logger.warning(f"[BACKEND] pid {proc.pid} ignored SIGTERM for {grace_s}s, sending SIGKILL")
    _signal_group(proc, signal.SIGKILL)
    proc.wait()


def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.send_signal(sig)


def _pump(stream, sink: list[str], callback: Callable[[str], None] | None) -> None:
    for line in iter(stream.readline, ""):
        sink.append(line)
        if callback is not None:
            try:
                callback(line)
            except Exception as e:
                logger.error(f"[BACKEND] Output callback failed: {e}")
    stream.close()


def _feed_stdin(stream, text: str) -> None:
    try:
        stream.write(text)
        stream.close()
    except OSError:
        logger.debug("[BACKEND] Child closed stdin before the prompt was written")


def run_process(
    cmd: list[str],
    cwd: Path,
    *,
    stdin_text: str | None = None,
    env: dict[str, str] | None = None,
    timeout_s: float | None = None,
    kill_grace_s: float = 5,
    on_output: Callable[[str], None] | None = None,
    on_tick: Callable[[], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> ProcessOutcome:
    """Run cmd to completion or until a stop condition; never leaves the group running."""
    started = time.monotonic()
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        env=env,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
        start_new_session=True,
    )

    out: list[str] = []
    err: list[str] = []
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, out, on_output), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, err, None), daemon=True),
    ]
    # A child that never reads stdin must not keep the timeout from starting
    if stdin_text is not None:
        readers.append(threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin_text), daemon=True))
    for t in readers:
        t.start()

    timed_out = cancelled = False
    try:
        while proc.poll() is None:
            if timeout_s is not None and time.monotonic() - started >= timeout_s:
                timed_out = True
                break
            if on_tick is not None:
                on_tick()
            if should_stop is not None and should_stop():
                cancelled = True
                break
            time.sleep(POLL_INTERVAL_S)
    except KeyboardInterrupt:
        terminate_process_group(proc, kill_grace_s)
        raise
    finally:
        if timed_out or cancelled:
            terminate_process_group(proc, kill_grace_s)

    for t in readers:
        t.join(timeout=kill_grace_s)

    return ProcessOutcome(
        exit_code=proc.returncode,
        stdout="".join(out),
        stderr="".join(err),
        timed_out=timed_out,
        cancelled=cancelled,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
