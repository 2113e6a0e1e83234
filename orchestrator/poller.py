# orchestrator/poller.py
import logging
import time

from orchestrator.errors import ErrorState, WaitTimeout

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 300
RETRY_DELAY = 1.0
STATUS_UPDATE_INTERVAL = 5.0


class StatusProbe:
    """
    Something whose status can be polled until it becomes usable.

    Subclasses set resource_id / resource_kind and implement the three checks.
    """

    resource_kind = "resource"

    def __init__(self, resource_id):
        self.resource_id = resource_id

    def current_status(self) -> str:
        raise NotImplementedError

    def is_target(self, status: str) -> bool:
        raise NotImplementedError

    def is_error(self, status: str) -> bool:
        raise NotImplementedError


def wait_for(
    probe: StatusProbe,
    max_attempts: int = MAX_ATTEMPTS,
    delay: float = RETRY_DELAY,
    deadline: float | None = None,
    sleep=time.sleep,
    clock=time.monotonic,
):
    """
    Block until probe reaches its target status.

    Returns the target status. Raises ErrorState the first time an error status
    is seen and WaitTimeout once max_attempts or the deadline (a clock() value)
    run out.
    """
    log.info("Waiting for %s %s to reach target status", probe.resource_kind, probe.resource_id)
    start = clock()
    last_update = start
    status = None

    for _ in range(max_attempts):
        status = probe.current_status()

        if probe.is_target(status):
            log.info(
                "%s %s reached %s (waited %ss)",
                probe.resource_kind,
                probe.resource_id,
                status,
                round(clock() - start),
            )
            return status

        if probe.is_error(status):
            raise ErrorState(
                f"{probe.resource_kind} {probe.resource_id} is in error state {status} "
                f"(waited {round(clock() - start)}s)",
                status=status,
            )

        now = clock()
        if deadline is not None and now >= deadline:
            break
        if now - last_update >= STATUS_UPDATE_INTERVAL:
            log.info("Current status: %s, waiting... (elapsed %ss)", status, round(now - start))
            last_update = now

        sleep(delay)

    raise WaitTimeout(
        f"timeout waiting for {probe.resource_kind} {probe.resource_id} to reach target status "
        f"(last status {status}, waited {round(clock() - start)}s)"
    )
