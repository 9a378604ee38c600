#!/usr/bin/env python3
"""Per-slot producer ownership and cancellation.

Only one producer (reader, ASR or OCR) may write into a slot at a time.
Starting a new one cancels the current owner and waits for it to exit
before the new body runs:

    cancel existing -> wait for exit -> run (mutate the store) -> release

ProducerSlot.request() registers the newest producer and cancels its
predecessor; ProducerSlot.run() then serializes bodies on the slot's run
lock, so a stale producer can never interleave writes with a fresh one.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from .errors import OperationCancelled, ProducerTimeoutError
from .logging_utils import component_tag, warn
from .models import ProducerKind, RunOutcome


# ============================================================
# Cancellation Token
# ============================================================

class CancelToken:
    """Cancellation flag owned by one producer run.

    Args:
        parent: Optional token whose cancellation also cancels this one
    """

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        """Raises:
            OperationCancelled: If this token or its parent was cancelled
        """
        if self.cancelled:
            raise OperationCancelled()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep until cancelled or timeout elapses. Returns cancelled."""
        if self._parent is None:
            return self._event.wait(timeout)
        # poll so that parent cancellation is noticed too
        step = 0.05
        remaining = timeout
        while not self.cancelled:
            if remaining is not None:
                if remaining <= 0:
                    return False
                self._event.wait(min(step, remaining))
                remaining -= step
            else:
                self._event.wait(step)
        return True


# ============================================================
# Worker Handle
# ============================================================

class ProducerHandle:
    """Result handle of a producer running on its own thread."""

    def __init__(self, kind: ProducerKind, slot: int, token: CancelToken) -> None:
        self.kind = kind
        self.slot = slot
        self.token = token
        self.thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self._outcome: Optional[RunOutcome] = None
        self._error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def cancel(self) -> None:
        self.token.cancel()

    def join(self, timeout: Optional[float] = None) -> RunOutcome:
        """Wait for the producer to finish.

        Args:
            timeout: Seconds to wait, or None to wait forever

        Returns:
            RunOutcome of the run

        Raises:
            ProducerTimeoutError: If the producer is still running after timeout
            Exception: Whatever the producer body raised
        """
        if not self._done.wait(timeout):
            raise ProducerTimeoutError(
                f"{self.kind.value} producer on slot {self.slot} still running after {timeout}s"
            )
        if self._error is not None:
            raise self._error
        assert self._outcome is not None
        return self._outcome

    def _finish(self, outcome: Optional[RunOutcome], error: Optional[BaseException]) -> None:
        self._outcome = outcome
        self._error = error
        self._done.set()


# ============================================================
# Slot Ownership
# ============================================================

class ProducerSlot:
    """Single-owner bookkeeping for one slot.

    Args:
        slot: Slot index
        quiet: Suppress warnings about failed workers
    """

    def __init__(self, slot: int, *, quiet: bool = False) -> None:
        self.slot = slot
        self.quiet = quiet
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._requested: Optional[CancelToken] = None
        self._requested_kind: Optional[ProducerKind] = None
        self._active_kind: Optional[ProducerKind] = None

    @property
    def active_kind(self) -> Optional[ProducerKind]:
        """Kind of the producer currently holding the run lock."""
        return self._active_kind

    def request(self, kind: ProducerKind) -> CancelToken:
        """Register a new producer and cancel the one it replaces."""
        token = CancelToken()
        with self._state_lock:
            prev = self._requested
            self._requested = token
            self._requested_kind = kind
        if prev is not None:
            prev.cancel()
        return token

    def cancel(self, kind: Optional[ProducerKind] = None) -> bool:
        """Request cancellation of the newest producer.

        Args:
            kind: Only cancel if the newest producer is of this kind

        Returns:
            True if a token was cancelled
        """
        with self._state_lock:
            token = self._requested
            if token is None:
                return False
            if kind is not None and self._requested_kind is not kind:
                return False
        token.cancel()
        return True

    def cancel_and_wait(self, kind: Optional[ProducerKind] = None) -> bool:
        """Cancel the newest producer and block until the slot is idle."""
        cancelled = self.cancel(kind)
        if cancelled:
            with self._run_lock:
                pass
        return cancelled

    @contextmanager
    def run(self, kind: ProducerKind, token: Optional[CancelToken] = None) -> Iterator[CancelToken]:
        """Own the slot for the duration of the block.

        Args:
            kind: Producer kind
            token: Token from a prior request(); a new one is requested if None

        Yields:
            The run's CancelToken (already cancelled if superseded meanwhile)
        """
        if token is None:
            token = self.request(kind)
        with self._run_lock:
            self._active_kind = kind
            try:
                yield token
            finally:
                self._active_kind = None
                with self._state_lock:
                    if self._requested is token:
                        self._requested = None
                        self._requested_kind = None

    def start(
        self,
        kind: ProducerKind,
        target: Callable[..., Optional[RunOutcome]],
        *args: Any,
        name: Optional[str] = None,
    ) -> ProducerHandle:
        """Run target(token, *args) on a worker thread as the slot's owner.

        The previous owner is cancelled before this call returns; the new
        body starts once the previous one has exited.

        Returns:
            Handle for waiting on the run and collecting its outcome
        """
        token = self.request(kind)
        handle = ProducerHandle(kind, self.slot, token)

        def body() -> None:
            outcome: Optional[RunOutcome] = None
            error: Optional[BaseException] = None
            try:
                with self.run(kind, token) as tok:
                    if tok.cancelled:
                        outcome = RunOutcome.STOPPED
                    else:
                        outcome = target(tok, *args) or RunOutcome.COMPLETED
            except OperationCancelled:
                outcome = RunOutcome.STOPPED
            except Exception as e:
                error = e
                warn(f"{kind.value} failed: {e}", quiet=self.quiet,
                     tag=component_tag("Producer", self.slot))
            except BaseException as e:
                # handed to the thread calling join()
                error = e
            finally:
                handle._finish(outcome, error)

        t = threading.Thread(
            target=body,
            name=name or f"{kind.value}-{self.slot + 1}",
            daemon=True,
        )
        handle.thread = t
        t.start()
        return handle
