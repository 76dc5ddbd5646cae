"""Client-side payment status polling.

Used by API clients while a checkout is open: polls ``check-status`` with
exponential backoff, gives up after a bounded number of attempts, and stops
as soon as the caller cancels (for example when the payment dialog closes).
"""

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

import requests
import structlog

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = ("completed", "refunded")


@dataclass
class PollResult:
    status: str
    attempts: int
    response: Optional[dict] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


def poll_payment_status(
    fetch_status: Callable[[], dict],
    max_attempts: int = 20,
    initial_delay: float = 2.0,
    max_delay: float = 15.0,
    backoff: float = 1.5,
    cancel_event: Optional[threading.Event] = None,
    retry_on: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError, requests.RequestException),
) -> PollResult:
    cancel_event = cancel_event or threading.Event()
    delay = initial_delay
    response = None
    for attempt in range(1, max_attempts + 1):
        if cancel_event.is_set():
            return PollResult("cancelled", attempt - 1, response)
        try:
            response = fetch_status()
        except retry_on as exc:
            logger.warning("payment_poll_failed", attempt=attempt, error=str(exc))
        else:
            status = (response or {}).get("status", "pending")
            if status in TERMINAL_STATUSES:
                return PollResult(status, attempt, response)
        if attempt == max_attempts:
            break
        # wait() returns early when cancelled
        if cancel_event.wait(delay):
            return PollResult("cancelled", attempt, response)
        delay = min(delay * backoff, max_delay)
    return PollResult("timeout", max_attempts, response)


class PaymentStatusPoller:
    """Runs ``poll_payment_status`` on a background thread."""

    def __init__(self, fetch_status: Callable[[], dict], on_done: Optional[Callable[[PollResult], None]] = None, **options):
        self._fetch_status = fetch_status
        self._on_done = on_done
        self._options = options
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.result: Optional[PollResult] = None

    def _run(self):
        try:
            self.result = poll_payment_status(self._fetch_status, cancel_event=self._cancel, **self._options)
        except Exception as exc:
            # on_done fires for every outcome
            logger.error("payment_poll_aborted", error=str(exc))
            self.result = PollResult("failed", 0, error=str(exc))
        if self._on_done is not None:
            self._on_done(self.result)

    def start(self) -> "PaymentStatusPoller":
        if self._thread is not None:
            raise RuntimeError("poller already started")
        self._thread = threading.Thread(target=self._run, name="payment-status-poller", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: Optional[float] = None) -> Optional[PollResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result
