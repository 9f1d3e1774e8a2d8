"""Serialise external operations and translate their events into outcomes.

The :class:`OperationSupervisor` is either idle or running exactly one
operation. A request made while running is ignored. Events from the running
:class:`~slotpanel.runner.RunHandle` are consumed one at a time on a
dedicated dispatch thread, so two events of the same operation are never
handled concurrently. Every terminal path returns the supervisor to idle
before any notification is emitted.

Notifications are exposed as observables and signals:

* ``busy`` (``Observable[bool]``)
* ``output`` (``Observable[str]``, full buffer snapshot)
* ``succeeded(title, message)``
* ``failed(title, message)``
* ``progress(percent)``
"""
from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from .observable import Observable, Signal
from .operations import Operation, OperationKind, Refresh
from .runner import (
    CommandRunner,
    EventSource,
    Finished,
    LaunchFailed,
    LaunchFailure,
    OutputChunk,
    RunEvent,
    RunnerError,
    RunOutcome,
)

LOGGER = logging.getLogger(__name__)

ERROR_TITLE = "Error"
PROGRESS_PATTERN = re.compile(r"(\d+)%")

LAUNCH_FAILURE_MESSAGES: Mapping[LaunchFailure, str] = {
    LaunchFailure.NOT_FOUND: "tool or privilege helper missing",
    LaunchFailure.CRASHED: "process crashed",
    LaunchFailure.TIMED_OUT: "process timed out",
    LaunchFailure.UNKNOWN: "unknown process error",
}

GENERIC_FAILURE = "Operation failed with exit code {code}"
DELETE_FAILURE = "Failed to delete backup with exit code {code}"
INVALID_SELECTION = "Invalid backup selection."


@dataclass(frozen=True, slots=True)
class SupervisorState:
    """``Idle`` when ``kind`` is ``None``, otherwise ``Running(kind)``."""

    kind: OperationKind | None = None

    @property
    def running(self) -> bool:
        """Return ``True`` while an operation is in flight."""
        return self.kind is not None

    def __str__(self) -> str:
        """Render as ``Idle`` or ``Running(kind)``."""
        return "Idle" if self.kind is None else f"Running({self.kind.value})"


IDLE = SupervisorState()


def extract_progress(text: str) -> int | None:
    """Return the last ``<digits>%`` value in *text*, clamped to 0..100."""
    matches = PROGRESS_PATTERN.findall(text)
    if not matches:
        return None
    return max(0, min(100, int(matches[-1])))


class OperationSupervisor:
    """At-most-one-running orchestrator for privileged tool invocations."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        refresh_hooks: Mapping[Refresh, Callable[[], object]] | None = None,
        cancel_grace: float = 1.0,
    ) -> None:
        """Bind the supervisor to *runner* and optional post-success hooks."""
        self._runner = runner
        self._hooks: dict[Refresh, Callable[[], object]] = dict(refresh_hooks or {})
        self._cancel_grace = cancel_grace
        self._lock = threading.Lock()
        self._state = IDLE
        self._handle: EventSource | None = None
        self._thread: threading.Thread | None = None
        self._buffer = ""
        self.last_outcome: RunOutcome | None = None

        self.busy: Observable[bool] = Observable("busy", False)
        self.output: Observable[str] = Observable("output", "")
        self.succeeded = Signal("operationSucceeded")
        self.failed = Signal("errorOccurred")
        self.progress = Signal("progress")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> SupervisorState:
        """Return the current state."""
        return self._state

    @property
    def runner(self) -> CommandRunner:
        """Return the runner used to launch operations."""
        return self._runner

    @property
    def is_busy(self) -> bool:
        """Return ``True`` while an operation is running."""
        return self._state.running

    @property
    def output_text(self) -> str:
        """Return a snapshot of the accumulated output."""
        return self._buffer

    def set_refresh_hook(self, refresh: Refresh, callback: Callable[[], object]) -> None:
        """Register *callback* to run after operations whose policy asks for *refresh*."""
        self._hooks[refresh] = callback

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_operation(
        self,
        kind: OperationKind,
        args: Sequence[str] = (),
        *,
        privileged: bool = True,
    ) -> bool:
        """Start *kind* with *args*; return ``False`` if another operation is running."""
        if kind is OperationKind.DELETE_BACKUP:
            path = args[0] if args else ""
            return self.delete_backup(path)
        operation = Operation.create(kind, args, privileged=privileged)
        return self._launch(
            operation,
            lambda: self._runner.start(
                operation.command,
                operation.arguments,
                privileged=operation.privileged,
                interactive=operation.policy.interactive,
            ),
        )

    def delete_backup(
        self,
        path: str,
        on_success: Callable[[], object] | None = None,
    ) -> bool:
        """Remove one backup file through the wrapper (``rm -f path``).

        This bypasses the managed tool. *on_success* runs on the dispatch
        thread only when the deletion exits with status 0, before the success
        notification is emitted.
        """
        if not path or not path.strip():
            self.failed.emit(ERROR_TITLE, INVALID_SELECTION)
            return False
        operation = Operation.create(OperationKind.DELETE_BACKUP, ["rm", "-f", path])
        return self._launch(
            operation,
            lambda: self._runner.start_direct(operation.arguments),
            on_success=on_success,
        )

    def cancel(self) -> None:
        """Terminate the running operation, if any."""
        handle = self._handle
        if handle is not None:
            handle.cancel(self._cancel_grace)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the dispatch thread finishes; return ``True`` when idle."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return not self._state.running
        thread.join(timeout)
        return not thread.is_alive()

    def clear_output(self) -> None:
        """Reset the output buffer."""
        self._buffer = ""
        self.output.set("")

    def close(self) -> None:
        """Cancel any live operation and wait briefly for it to wind down."""
        self.cancel()
        self.wait(self._cancel_grace * 2)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _launch(
        self,
        operation: Operation,
        starter: Callable[[], EventSource],
        *,
        on_success: Callable[[], object] | None = None,
    ) -> bool:
        with self._lock:
            if self._state.running:
                LOGGER.debug(
                    "Ignoring %s request while %s", operation.kind.value, self._state
                )
                return False
            self._state = SupervisorState(operation.kind)

        try:
            self.busy.set(True)
            self.last_outcome = None
            self._buffer = ""
            self.output.set("", force=True)
        except Exception:
            LOGGER.debug("Start notification for %s failed; back to idle", operation.kind.value)
            self._abort_start()
            raise

        events: Iterable[RunEvent]
        try:
            handle = starter()
        except RunnerError as exc:
            LOGGER.warning("Unable to launch %s: %s", operation.kind.value, exc)
            events = [LaunchFailed(LaunchFailure.NOT_FOUND, str(exc))]
        else:
            self._handle = handle
            events = handle.events()

        thread = threading.Thread(
            target=self._pump,
            args=(operation, events, on_success),
            name=f"slotpanel-{operation.kind.value}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return True

    def _pump(
        self,
        operation: Operation,
        events: Iterable[RunEvent],
        on_success: Callable[[], object] | None,
    ) -> None:
        terminal_seen = False
        try:
            for event in events:
                if isinstance(event, OutputChunk):
                    self._on_chunk(operation, event.text)
                    continue
                terminal_seen = True
                self.last_outcome = _outcome_from(event, self._buffer)
                self._release()
                if isinstance(event, Finished):
                    self._on_finished(operation, event.exit_code, on_success)
                else:
                    self._on_launch_failed(operation, event)
                break
        except Exception:
            LOGGER.exception("Event dispatch for %s failed", operation.kind.value)
            handle = self._handle
            if handle is not None:
                handle.cancel(self._cancel_grace)
        finally:
            if not terminal_seen:
                self.last_outcome = RunOutcome(None, LaunchFailure.UNKNOWN, self._buffer)
                self._release()
                self.failed.emit(ERROR_TITLE, LAUNCH_FAILURE_MESSAGES[LaunchFailure.UNKNOWN])

    def _abort_start(self) -> None:
        with self._lock:
            self._state = IDLE
            self._handle = None
        try:
            self.busy.set(False)
        except Exception:
            LOGGER.exception("busy subscriber failed while aborting a start")

    def _release(self) -> None:
        with self._lock:
            self._state = IDLE
            self._handle = None
        self.busy.set(False)

    def _append(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        self.output.set(self._buffer)

    def _on_chunk(self, operation: Operation, text: str) -> None:
        self._append(text)
        if operation.policy.tracks_progress:
            percent = extract_progress(text)
            if percent is not None:
                self.progress.emit(percent)

    def _on_finished(
        self,
        operation: Operation,
        exit_code: int,
        on_success: Callable[[], object] | None,
    ) -> None:
        policy = operation.policy
        LOGGER.debug("%s finished with exit code %s", operation.kind.value, exit_code)
        if exit_code != 0:
            template = (
                DELETE_FAILURE
                if operation.kind is OperationKind.DELETE_BACKUP
                else GENERIC_FAILURE
            )
            message = self._buffer.strip() or template.format(code=exit_code)
            self.failed.emit(ERROR_TITLE, message)
            return

        if on_success is not None:
            on_success()
        if policy.note:
            self._append(f"\n\n{policy.note}")
        if policy.message:
            self.succeeded.emit(policy.title, policy.message)
        hook = self._hooks.get(policy.refresh)
        if hook is not None:
            hook()

    def _on_launch_failed(self, operation: Operation, event: LaunchFailed) -> None:
        LOGGER.debug(
            "%s failed to run: %s (%s)", operation.kind.value, event.reason.value, event.detail
        )
        message = LAUNCH_FAILURE_MESSAGES.get(
            event.reason, LAUNCH_FAILURE_MESSAGES[LaunchFailure.UNKNOWN]
        )
        self.failed.emit(ERROR_TITLE, message)


def _outcome_from(event: Finished | LaunchFailed, output: str) -> RunOutcome:
    if isinstance(event, Finished):
        return RunOutcome(event.exit_code, None, output)
    return RunOutcome(None, event.reason, output)


__all__ = [
    "IDLE",
    "LAUNCH_FAILURE_MESSAGES",
    "OperationSupervisor",
    "SupervisorState",
    "extract_progress",
]
