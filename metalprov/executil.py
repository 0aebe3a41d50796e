"""Subprocess wrapper, JSONL trace log and udev settle-waits."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "metalprov.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/metalprov",
        "/tmp/metalprov-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("METALPROV_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float = 60.0,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    env2.setdefault("METALPROV_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    except subprocess.TimeoutExpired:
        # udev still processing events is the usual cause; let it finish once
        udev_settle()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out=proc.stdout, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle(timeout: float | None = None, exit_if_exists: str | None = None):
    cmd = ["udevadm", "settle"]
    if timeout is not None:
        cmd.append(f"--timeout={int(max(1, timeout))}")
    if exit_if_exists:
        cmd.append(f"--exit-if-exists={exit_if_exists}")
    try:
        subprocess.run(cmd, check=False)
    except OSError:
        pass


def udev_trigger():
    try:
        subprocess.run(["udevadm", "trigger"], check=False)
    except OSError:
        pass


def wait_for_path(
    path: str,
    timeout: float,
    error_cls: type[Exception],
    what: str = "device",
    dry_run: bool = False,
    interval: float = 0.25,
) -> str:
    """Block until ``path`` exists, for at most ``timeout`` seconds.

    Kernel device nodes and ``/dev/disk/by-*`` links are published
    asynchronously by udev.  Between polls udev is asked to settle with an
    early exit on ``path``.  Running out of time raises ``error_cls``; the
    caller decides which member of the not-ready family that is.
    """

    if dry_run:
        return path
    deadline = time.monotonic() + timeout
    trace("wait.start", path=path, timeout=timeout, what=what)
    while True:
        if os.path.exists(path):
            trace("wait.ready", path=path, what=what)
            return path
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        udev_settle(timeout=min(remaining, 1.0), exit_if_exists=path)
        if os.path.exists(path):
            continue
        time.sleep(min(interval, max(0.0, remaining)))
    warn("wait.timeout", path=path, timeout=timeout, what=what)
    raise error_cls(f"{what} {path} did not appear within {timeout:.0f}s")


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
