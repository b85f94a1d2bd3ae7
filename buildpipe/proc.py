# buildpipe/proc.py
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger("buildpipe.proc")

LineSink = Callable[[str], None]


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    output: List[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not (self.timed_out or self.cancelled)

    @property
    def text(self) -> str:
        return "\n".join(self.output)

    def describe(self) -> str:
        if self.timed_out:
            return "timed out"
        if self.cancelled:
            return "cancelled"
        return f"exit status {self.returncode}"


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def run_streaming(
    cmd: str | List[str],
    cwd: Path,
    on_line: Optional[LineSink] = None,
    env: Optional[dict] = None,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> CommandResult:
    """
    Run a command in 'cwd' with stderr folded into stdout, handing each output
    line to 'on_line' as it is produced. Accepts a shell-style string or a list
    of args.

    The command gets its own session; if 'timeout' seconds pass or 'cancel' is
    set, the whole process group is killed. Raises OSError if the executable
    cannot be started.
    """
    e = os.environ.copy()
    if env:
        e.update(env)

    if isinstance(cmd, list):
        args = [str(x) for x in cmd]     # pass through directly
    else:
        args = shlex.split(cmd)          # parse string into argv

    logger.debug("$ %s (cwd=%s)", " ".join(args), cwd)
    p = subprocess.Popen(
        args,
        cwd=str(cwd),
        env=e,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        bufsize=1,
        start_new_session=True,
    )

    finished = threading.Event()
    stopped: List[str] = []

    def _watch() -> None:
        deadline = time.monotonic() + timeout if timeout else None
        while not finished.is_set():
            if cancel is not None and cancel.is_set():
                stopped.append("cancelled")
                _kill_group(p)
                return
            if deadline is not None and time.monotonic() >= deadline:
                stopped.append("timed_out")
                _kill_group(p)
                return
            finished.wait(0.2)

    watcher = threading.Thread(target=_watch, name=f"watch-{p.pid}", daemon=True)
    watcher.start()

    output: List[str] = []
    try:
        for raw in p.stdout:
            line = raw.rstrip("\r\n")
            output.append(line)
            if on_line is not None and line.strip():
                on_line(line)
        code = p.wait()
    finally:
        finished.set()
        watcher.join()
        if p.poll() is None:
            _kill_group(p)
            p.wait()
        p.stdout.close()

    return CommandResult(
        args=args,
        returncode=code,
        output=output,
        timed_out="timed_out" in stopped,
        cancelled="cancelled" in stopped,
    )
