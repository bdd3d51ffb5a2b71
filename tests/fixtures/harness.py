"""Drive a scheduler against an in-memory queue without a background worker."""

import asyncio

from waypoint.persistence.models import Run


async def drain(scheduler, transport, queue: str = "runs") -> int:
    """Process queued run messages until the queue is empty."""
    processed = 0
    while transport.pending(queue):
        _, message = transport._queues[queue].popleft()
        await scheduler.process(message)
        processed += 1
    return processed


async def wait_for_message(transport, queue: str = "runs", timeout: float = 2.0) -> None:
    """Wait until a timer or hook wake-up lands on the queue."""

    async def _poll():
        while not transport.pending(queue):
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def run_until_idle(scheduler, transport, run_id: str, timeout: float = 2.0) -> Run:
    """Drain, following timer wake-ups, until the run is terminal or parked on a hook."""

    async def _loop() -> Run:
        while True:
            await drain(scheduler, transport)
            run = await scheduler.get_run(run_id)
            if run.status.is_terminal:
                return run
            if run.resume_at is None:
                return run
            await wait_for_message(transport)

    return await asyncio.wait_for(_loop(), timeout)
