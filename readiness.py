"""
Readiness Module

Polls a freshly launched container until the engine reports it running.
"""

import asyncio
from typing import Optional

from container_engine import ABSENT, RUNNING, ContainerEngine, container_state
from utils import logger, ReadinessCancelled, ReadinessTimeout

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL = 1.0


async def wait_until_running(
    engine: ContainerEngine,
    container_id: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    cancel_event: Optional[asyncio.Event] = None,
) -> None:
    """Wait for `container_id` to reach the running state.

    The state is polled once per `poll_interval` seconds, at most
    `max_attempts` times. The first poll is immediate, so the wait gives up
    after (max_attempts - 1) * poll_interval seconds plus the poll time:
    about 29 s with the defaults. Any state other than running, `absent`
    included, counts as not ready yet. Setting `cancel_event` stops the wait
    at once.

    Raises:
        ReadinessTimeout: attempts exhausted; carries the last observed state.
        ReadinessCancelled: `cancel_event` was set before the container ran.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    cancel_event = cancel_event or asyncio.Event()
    last_state = ABSENT

    for attempt in range(1, max_attempts + 1):
        if cancel_event.is_set():
            raise ReadinessCancelled(container_id, attempt - 1, last_state)

        last_state = await asyncio.to_thread(container_state, engine, container_id)
        logger.info(
            "Waiting for container to start",
            container_id=container_id,
            attempt=attempt,
            state=last_state,
        )
        if last_state == RUNNING:
            logger.info("Container is running", container_id=container_id)
            return

        if attempt == max_attempts:
            break

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            continue
        raise ReadinessCancelled(container_id, attempt, last_state)

    raise ReadinessTimeout(container_id, max_attempts, last_state)
