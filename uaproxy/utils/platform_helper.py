#!/usr/bin/env python3
"""Process helpers for the background proxy daemon."""
import subprocess
import sys
from typing import IO, List, Mapping, Optional

import psutil


def is_process_running(pid: Optional[int]) -> bool:
    """Check whether a process is alive on any supported platform."""
    if pid is None:
        return False

    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def kill_process(pid: Optional[int], timeout: float = 5.0) -> bool:
    """Terminate a process tree, escalating to kill after ``timeout`` seconds."""
    if not is_process_running(pid):
        return True

    try:
        process = psutil.Process(pid)
        targets = process.children(recursive=True) + [process]
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return True

    for target in targets:
        try:
            target.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    _, still_alive = psutil.wait_procs(targets, timeout=timeout)
    for target in still_alive:
        try:
            target.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return True


def create_detached_process(cmd: List[str], log_file: IO, *, cwd: Optional[str] = None,
                            env: Optional[Mapping[str, str]] = None) -> subprocess.Popen:
    """Start ``cmd`` detached from the controlling console."""
    kwargs = {}
    if sys.platform == "win32":
        kwargs['creationflags'] = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
    else:
        kwargs['start_new_session'] = True

    try:
        return subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdout=log_file,
            stderr=log_file,
            stdin=subprocess.DEVNULL,
            **kwargs,
        )
    except OSError as e:
        raise RuntimeError(f"Failed to create detached process: {e}") from e
