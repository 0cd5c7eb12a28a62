"""Bounded polling primitives shared by the quiescer and the converter."""

from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import TYPE_CHECKING, Callable

import structlog

from .errors import ClusterApiError, WaitCancelledError, WaitTimeoutError

if TYPE_CHECKING:
    from .k8s import ClusterClient

BOUND_PHASE = "Bound"

logger = structlog.get_logger()


@dataclass(frozen=True)
class PollPolicy:
    """Fixed-interval retry policy.

    A ``timeout_seconds`` of zero or less disables the deadline. Setting
    ``cancel_event`` lets another thread stop the wait between two polls.
    """

    interval_seconds: float
    timeout_seconds: float
    cancel_event: threading.Event | None = None

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")


def wait_until(
    predicate: Callable[[], bool],
    *,
    policy: PollPolicy,
    description: str,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll ``predicate`` until it returns True and return the number of polls.

    A ``ClusterApiError`` raised by the predicate counts as "not yet" and is
    retried until the deadline.
    """
    deadline = clock() + policy.timeout_seconds if policy.timeout_seconds > 0 else None
    attempts = 0
    last_error: ClusterApiError | None = None
    while True:
        if policy.cancel_event is not None and policy.cancel_event.is_set():
            raise WaitCancelledError(f"cancelled while waiting for {description}")

        attempts += 1
        try:
            if predicate():
                return attempts
            last_error = None
        except ClusterApiError as error:
            last_error = error
            logger.warning("poll_failed", target=description, attempt=attempts, error=str(error))

        if deadline is not None and clock() >= deadline:
            detail = f"; last error: {last_error}" if last_error else ""
            raise WaitTimeoutError(
                f"timed out after {policy.timeout_seconds:g}s waiting for {description} "
                f"({attempts} attempts{detail})"
            )

        if policy.cancel_event is not None:
            if policy.cancel_event.wait(policy.interval_seconds):
                raise WaitCancelledError(f"cancelled while waiting for {description}")
        else:
            sleep(policy.interval_seconds)


class BindingWaiter:
    def __init__(self, *, cluster: ClusterClient, policy: PollPolicy) -> None:
        self.cluster = cluster
        self.policy = policy

    def wait_for_bound(self, *, namespace: str, claim_name: str, volume_name: str) -> None:
        log = logger.bind(namespace=namespace, claim=claim_name, volume=volume_name)
        log.info("waiting_for_bound_status")

        def _both_bound() -> bool:
            claim_phase = self.cluster.read_claim_phase(namespace, claim_name)
            volume_phase = self.cluster.read_volume_phase(volume_name)
            log.debug("binding_poll", claim_phase=claim_phase, volume_phase=volume_phase)
            return claim_phase == BOUND_PHASE and volume_phase == BOUND_PHASE

        attempts = wait_until(
            _both_bound,
            policy=self.policy,
            description=f"PVC {namespace}/{claim_name} and PV {volume_name} to reach {BOUND_PHASE}",
        )
        log.info("claim_and_volume_bound", attempts=attempts)
