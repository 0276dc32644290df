"""Transports: one network call or one child process per adapter invocation.

A transport reads its byte stream on a background daemon thread and hands
chunks to the consuming thread through a queue, so everything that touches
run state happens on the caller's thread. ``wait()`` blocks until the
transport has finished and returns its TransportResult.
"""

import logging
import os
import queue
import subprocess
import sys
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass

from .report import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
READ_SIZE = 8192
MAX_CAPTURE = 4 * 1024 * 1024  # 4 MB of stdout/body kept for post-mortem scans
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_EOF = object()


@dataclass
class TransportResult:
    returncode: int
    output: bytes = b""
    diagnostic: str = ""
    timed_out: bool = False
    killed: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class Transport:
    """Base class. Subclasses implement _open() and _pump()."""

    def __init__(self, timeout: float | None = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._queue: queue.Queue = queue.Queue()
        self._captured: list[bytes] = []
        self._captured_size = 0
        self._done = threading.Event()
        self._result: TransportResult | None = None
        self._timer: threading.Timer | None = None
        self._timed_out = False
        self._killed = False
        self._thread: threading.Thread | None = None

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        self._open()
        if self.timeout:
            self._timer = threading.Timer(self.timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()
        self._thread = threading.Thread(
            target=self._run, name=f"quill-{type(self).__name__}", daemon=True
        )
        self._thread.start()

    def chunks(self):
        """Yield byte chunks in arrival order until the stream ends."""
        while True:
            item = self._queue.get()
            if item is _EOF:
                return
            yield item

    def wait(self, timeout: float | None = None) -> TransportResult:
        if not self._done.wait(timeout):
            raise TransportError("transport did not finish in time")
        return self._result

    def kill(self) -> None:
        """Hard-terminate the transport. Safe to call from any thread."""
        if self._killed or self._done.is_set():
            return
        self._killed = True
        self._terminate()
        # Unblock the consumer even if the reader thread is stuck in a read.
        self._queue.put(_EOF)

    @property
    def killed(self) -> bool:
        return self._killed

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    # -- internals -------------------------------------------------------

    def _emit(self, chunk: bytes) -> None:
        if self._captured_size < MAX_CAPTURE:
            self._captured.append(chunk)
            self._captured_size += len(chunk)
        self._queue.put(chunk)

    @property
    def captured(self) -> bytes:
        return b"".join(self._captured)

    def _on_timeout(self) -> None:
        if self._done.is_set():
            return
        logger.debug("%s timed out after %ss", type(self).__name__, self.timeout)
        self._timed_out = True
        self._terminate()

    def _run(self) -> None:
        try:
            result = self._pump()
        except Exception as e:  # reader thread must always report back
            logger.debug("transport reader failed: %s", e)
            result = TransportResult(returncode=-1, diagnostic=str(e))
        if self._timer is not None:
            self._timer.cancel()
        result.output = self.captured
        result.timed_out = result.timed_out or self._timed_out
        result.killed = self._killed
        self._result = result
        self._done.set()
        self._queue.put(_EOF)

    def _open(self) -> None:
        raise NotImplementedError

    def _pump(self) -> TransportResult:
        raise NotImplementedError

    def _terminate(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Child process
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


class ProcessTransport(Transport):
    """Run a command and stream its stdout. stdin is closed immediately."""

    def __init__(
        self,
        argv: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        super().__init__(timeout=timeout)
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.proc: subprocess.Popen | None = None
        self._stderr: list[bytes] = []

    def _open(self) -> None:
        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=self.cwd,
            env=self.env,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        logger.debug("spawning %s (cwd=%s)", self.argv[0], self.cwd)
        try:
            self.proc = subprocess.Popen(self.argv, **popen_kwargs)
        except FileNotFoundError:
            raise TransportError(f"command not found: {self.argv[0]}")
        except OSError as e:
            raise TransportError(f"failed to start {self.argv[0]}: {e}")

    def _drain_stderr(self) -> None:
        try:
            for line in self.proc.stderr:
                self._stderr.append(line)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def _pump(self) -> TransportResult:
        err_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        err_thread.start()
        try:
            while True:
                chunk = self.proc.stdout.read1(READ_SIZE)
                if not chunk:
                    break
                self._emit(chunk)
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill
        returncode = self.proc.wait()
        err_thread.join(timeout=2)
        stderr = b"".join(self._stderr).decode("utf-8", errors="replace")
        logger.debug("%s exited with %s", self.argv[0], returncode)
        return TransportResult(returncode=returncode, diagnostic=stderr.strip())

    def _terminate(self) -> None:
        if self.proc is not None and self.proc.poll() is None:
            _kill_process_tree(self.proc)


def run_command(argv: list[str], *, timeout: float, cwd: str | None = None) -> int:
    """Run a command to completion, discarding output. Returns the exit code.

    A missing executable or a timeout is reported as a non-zero code.
    """
    try:
        proc = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        logger.debug("%s timed out after %ss", argv[0], timeout)
        return 124
    except OSError as e:
        logger.debug("%s failed to start: %s", argv[0], e)
        return 127
    return proc.returncode


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class HttpTransport(Transport):
    """POST a JSON body and stream the response body."""

    def __init__(
        self,
        url: str,
        body: bytes,
        *,
        headers: dict[str, str] | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ):
        super().__init__(timeout=timeout)
        self.url = url
        self.body = body
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._response = None

    def _open(self) -> None:
        pass  # the connection is made on the reader thread

    def _pump(self) -> TransportResult:
        req = urllib.request.Request(
            self.url, data=self.body, headers=self.headers, method="POST"
        )
        try:
            self._response = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            body = e.read() or b""
            self._emit(body)
            return TransportResult(
                returncode=e.code,
                diagnostic=f"HTTP {e.code} {e.reason}: "
                + body.decode("utf-8", errors="replace")[:2000],
            )
        except urllib.error.URLError as e:
            timed_out = isinstance(e.reason, TimeoutError)
            return TransportResult(
                returncode=-1, diagnostic=f"connection failed: {e.reason}", timed_out=timed_out
            )
        except TimeoutError:
            return TransportResult(returncode=-1, diagnostic="connection timed out", timed_out=True)

        try:
            with self._response:
                while True:
                    chunk = self._response.read1(READ_SIZE)
                    if not chunk:
                        break
                    self._emit(chunk)
        except TimeoutError:
            return TransportResult(returncode=-1, diagnostic="read timed out", timed_out=True)
        except (OSError, ValueError) as e:
            if self._killed or self._timed_out:
                return TransportResult(returncode=-1, diagnostic="connection closed")
            return TransportResult(returncode=-1, diagnostic=f"read failed: {e}")
        return TransportResult(returncode=0)

    def _terminate(self) -> None:
        resp = self._response
        if resp is not None:
            try:
                resp.close()
            except OSError:
                pass
