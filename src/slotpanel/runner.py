"""Launch external commands and stream their output as ordered events.

A :class:`CommandRunner` knows the managed tool and the privilege wrapper and
turns a request into an argv. Each launch yields a :class:`RunHandle` whose
:meth:`RunHandle.events` produces zero or more :class:`OutputChunk` events
followed by exactly one terminal event, either :class:`Finished` or
:class:`LaunchFailed`.

Standard output and standard error are read by two background threads that
feed one queue, so callers see a single merged stream. The terminal event is
only produced after both readers reached end-of-file, which guarantees no
trailing output is lost.

Non-interactive processes run in a session of their own so that a timeout or
cancellation reaches everything the tool started.
"""
from __future__ import annotations

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import IO, Protocol

LOGGER = logging.getLogger(__name__)

READ_SIZE = 4096
POLL_INTERVAL = 0.1
#: How long readers may keep a pipe open after the process was killed.
READER_GRACE = 0.5


class RunnerError(RuntimeError):
    """Raised when a runner or handle is misused."""


class LaunchFailure(str, Enum):
    """Reasons a process did not produce a normal exit code."""

    NOT_FOUND = "not-found"
    CRASHED = "crashed"
    TIMED_OUT = "timed-out"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """A piece of decoded output from either standard stream."""

    text: str


@dataclass(frozen=True, slots=True)
class Finished:
    """The process exited normally with *exit_code*."""

    exit_code: int


@dataclass(frozen=True, slots=True)
class LaunchFailed:
    """The process could not be started or did not exit normally."""

    reason: LaunchFailure
    detail: str = ""


RunEvent = OutputChunk | Finished | LaunchFailed


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Terminal result of one invocation plus everything it printed."""

    exit_code: int | None
    launch_failure: LaunchFailure | None
    combined_output: str = ""

    def __post_init__(self) -> None:
        """Enforce that exactly one of the two result fields is populated."""
        if (self.exit_code is None) == (self.launch_failure is None):
            raise RunnerError("RunOutcome needs exactly one of exit_code or launch_failure.")

    @property
    def ok(self) -> bool:
        """Return ``True`` when the process exited with status 0."""
        return self.exit_code == 0


class EventSource(Protocol):
    """What the supervisor needs from a launched invocation."""

    def events(self) -> Iterator[RunEvent]:
        """Yield output chunks and then one terminal event."""
        ...

    def cancel(self, grace: float | None = None) -> None:
        """Terminate the invocation."""
        ...


PopenFactory = Callable[..., "subprocess.Popen[bytes]"]


class RunHandle:
    """One external process and the ordered event channel it feeds."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel_grace: float = 1.0,
        interactive: bool = False,
        capture_stderr: bool = True,
        popen: PopenFactory = subprocess.Popen,
    ) -> None:
        """Prepare (but do not start) the invocation of *argv*.

        An *interactive* invocation inherits the caller's standard input and
        stays in the caller's process group so it keeps the terminal. Every
        other invocation gets its own session, and timeouts and cancellation
        signal that whole group. With *capture_stderr* off, standard error is
        discarded and only standard output is reported.
        """
        if not argv:
            raise RunnerError("Cannot launch an empty command.")
        self.argv = list(argv)
        self.timeout = timeout
        self.cancel_grace = cancel_grace
        self.interactive = interactive
        self.capture_stderr = capture_stderr
        self._popen = popen
        self._process: subprocess.Popen[bytes] | None = None
        self._queue: queue.Queue[tuple[str, str]] = queue.Queue()
        self._launch_error: LaunchFailed | None = None
        self._timer: threading.Timer | None = None
        self._readers = 0
        self._timed_out = False
        self._started = False
        self._consumed = False
        self.cancelled = False

    @property
    def pid(self) -> int | None:
        """Return the OS process id once started."""
        return self._process.pid if self._process is not None else None

    @property
    def owns_process_group(self) -> bool:
        """Return ``True`` when the process leads its own process group."""
        return not self.interactive

    def start(self) -> RunHandle:
        """Spawn the process and its reader threads."""
        if self._started:
            raise RunnerError(f"Handle for {self.argv[0]!r} was already started.")
        self._started = True
        LOGGER.debug("Launching %s", self.argv)
        try:
            process = self._popen(  # noqa: S603
                self.argv,
                stdin=None if self.interactive else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE if self.capture_stderr else subprocess.DEVNULL,
                start_new_session=self.owns_process_group,
            )
        except (FileNotFoundError, PermissionError) as exc:
            self._launch_error = LaunchFailed(LaunchFailure.NOT_FOUND, str(exc))
            return self
        except OSError as exc:
            self._launch_error = LaunchFailed(LaunchFailure.UNKNOWN, str(exc))
            return self

        self._process = process
        streams = [("stdout", process.stdout)]
        if self.capture_stderr:
            streams.append(("stderr", process.stderr))
        self._readers = len(streams)
        for label, stream in streams:
            thread = threading.Thread(
                target=self._reader,
                args=(stream, label),
                name=f"slotpanel-{label}-{process.pid}",
                daemon=True,
            )
            thread.start()
        if self.timeout is not None:
            self._timer = threading.Timer(self.timeout, self._expire)
            self._timer.daemon = True
            self._timer.start()
        return self

    def events(self) -> Iterator[RunEvent]:
        """Yield output chunks in arrival order followed by one terminal event.

        Normally every reader is drained to end-of-file first. After a
        timeout or cancellation the readers get :data:`READER_GRACE` seconds
        once the process has been reaped; a descendant that still holds a
        pipe open is not waited for.
        """
        if not self._started:
            raise RunnerError("Handle must be started before reading events.")
        if self._consumed:
            raise RunnerError("Events for this handle were already consumed.")
        self._consumed = True

        if self._launch_error is not None:
            yield self._launch_error
            return

        process = self._process
        assert process is not None
        open_streams = self._readers
        abandon_at: float | None = None
        while open_streams:
            try:
                kind, payload = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if abandon_at is None:
                    if (self._timed_out or self.cancelled) and process.poll() is not None:
                        abandon_at = time.monotonic() + READER_GRACE
                elif time.monotonic() >= abandon_at:
                    LOGGER.debug(
                        "Abandoning %d open pipe(s) of killed pid %s", open_streams, process.pid
                    )
                    break
                continue
            if kind == "chunk":
                yield OutputChunk(payload)
            elif kind == "error":
                LOGGER.debug("Reader error for %s: %s", self.argv[0], payload)
            else:
                open_streams -= 1

        returncode = process.wait()
        if self._timer is not None:
            self._timer.cancel()
        yield self._classify(returncode)

    def collect(self) -> RunOutcome:
        """Drain all events and return the combined :class:`RunOutcome`."""
        parts: list[str] = []
        for event in self.events():
            if isinstance(event, OutputChunk):
                parts.append(event.text)
            elif isinstance(event, Finished):
                return RunOutcome(event.exit_code, None, "".join(parts))
            else:
                return RunOutcome(None, event.reason, "".join(parts))
        raise RunnerError("Event stream ended without a terminal event.")  # pragma: no cover

    def cancel(self, grace: float | None = None) -> None:
        """Send SIGTERM, then SIGKILL if the process outlives *grace* seconds."""
        process = self._process
        if process is None or process.poll() is not None:
            return
        self.cancelled = True
        wait_for = self.cancel_grace if grace is None else grace
        LOGGER.debug("Terminating pid %s", process.pid)
        self._signal(signal.SIGTERM)
        try:
            process.wait(timeout=wait_for)
        except subprocess.TimeoutExpired:
            LOGGER.debug("pid %s ignored SIGTERM; killing", process.pid)
            self._signal(signal.SIGKILL)
            try:
                process.wait(timeout=wait_for)
            except subprocess.TimeoutExpired:
                LOGGER.warning("pid %s did not exit after SIGKILL", process.pid)
            return
        if self.owns_process_group:
            # Descendants that ignored SIGTERM would keep the pipes open.
            self._signal(signal.SIGKILL)

    # ------------------------------------------------------------------
    def _signal(self, signum: int) -> None:
        process = self._process
        if process is None:
            return
        try:
            if self.owns_process_group:
                os.killpg(process.pid, signum)
            else:
                process.send_signal(signum)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            LOGGER.warning("Not permitted to signal pid %s: %s", process.pid, exc)

    def _reader(self, stream: IO[bytes] | None, label: str) -> None:
        if stream is None:
            self._queue.put(("eof", label))
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read1(READ_SIZE)  # type: ignore[attr-defined]
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._queue.put(("chunk", text))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put(("chunk", tail))
        except (OSError, ValueError) as exc:
            self._queue.put(("error", f"{label}: {exc}"))
        finally:
            stream.close()
            self._queue.put(("eof", label))

    def _expire(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        self._timed_out = True
        LOGGER.debug("pid %s exceeded %ss; killing", process.pid, self.timeout)
        self._signal(signal.SIGKILL)

    def _classify(self, returncode: int) -> Finished | LaunchFailed:
        if self._timed_out:
            return LaunchFailed(LaunchFailure.TIMED_OUT, f"exceeded {self.timeout}s")
        if returncode < 0:
            return LaunchFailed(LaunchFailure.CRASHED, f"terminated by signal {-returncode}")
        return Finished(returncode)


@dataclass(slots=True)
class CommandRunner:
    """Build argv for the managed tool and launch it, optionally elevated."""

    tool_bin: str = "obsidianctl"
    wrapper_bin: str | None = "pkexec"
    cancel_grace: float = 1.0
    popen: PopenFactory = subprocess.Popen

    def build_argv(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        privileged: bool = True,
    ) -> list[str]:
        """Return the argv that runs ``tool command args`` (wrapped if privileged)."""
        if privileged:
            return [self._require_wrapper(), self.tool_bin, command, *args]
        return [self.tool_bin, command, *args]

    def direct_argv(self, args: Sequence[str]) -> list[str]:
        """Return the argv that runs *args* through the wrapper, bypassing the tool."""
        return [self._require_wrapper(), *args]

    def start(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        privileged: bool = True,
        timeout: float | None = None,
        interactive: bool = False,
    ) -> RunHandle:
        """Launch ``tool command args`` and return the running handle."""
        argv = self.build_argv(command, args, privileged=privileged)
        return self.launch(argv, timeout=timeout, interactive=interactive)

    def start_direct(self, args: Sequence[str], *, timeout: float | None = None) -> RunHandle:
        """Launch *args* directly under the privilege wrapper."""
        return self.launch(self.direct_argv(args), timeout=timeout)

    def launch(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        interactive: bool = False,
        capture_stderr: bool = True,
    ) -> RunHandle:
        """Launch an arbitrary *argv*."""
        handle = RunHandle(
            argv,
            timeout=timeout,
            cancel_grace=self.cancel_grace,
            interactive=interactive,
            capture_stderr=capture_stderr,
            popen=self.popen,
        )
        return handle.start()

    def run_blocking(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        capture_stderr: bool = True,
    ) -> RunOutcome:
        """Run *argv* to completion (bounded by *timeout*) and return the outcome.

        With *capture_stderr* off the outcome holds standard output only.
        """
        return self.launch(argv, timeout=timeout, capture_stderr=capture_stderr).collect()

    def _require_wrapper(self) -> str:
        if not self.wrapper_bin:
            raise RunnerError("No privilege wrapper configured for a privileged invocation.")
        return self.wrapper_bin


__all__ = [
    "CommandRunner",
    "EventSource",
    "Finished",
    "LaunchFailed",
    "LaunchFailure",
    "OutputChunk",
    "RunEvent",
    "RunHandle",
    "RunOutcome",
    "RunnerError",
]
