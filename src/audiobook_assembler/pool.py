"""Bounded-parallelism runner for lazily produced work units.

Units are pulled from the producer one at a time and only when a slot is
free, so an unbounded producer (a large directory walk) never has more than
`limit` units alive. A failing unit becomes a failed outcome; it never stops
its siblings or further admission.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from loguru import logger

from .errors import ValidationError
from .models import PoolResult, UnitOutcome, UnitStatus, WorkUnit

log = logger.bind(stage="pool")


def run_pool(
    units: Iterable[WorkUnit],
    limit: int,
    cancel: threading.Event | None = None,
) -> PoolResult:
    """Run every unit with at most `limit` executing at once.

    Admission follows the producer's order; outcomes are recorded in
    completion order. When `cancel` is set no further units are admitted,
    in-flight units finish, and the result is marked cancelled.

    Raises:
        ValidationError: If limit is not a positive integer
    """
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError(f"Concurrency limit must be a positive integer, got {limit!r}")

    result = PoolResult()
    iterator = iter(units)
    active: dict[Future, WorkUnit] = {}
    exhausted = False

    with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="pool") as executor:
        while not exhausted or active:
            # Admit units until the live set is full or the producer runs dry
            while not exhausted and len(active) < limit:
                if cancel is not None and cancel.is_set():
                    log.warning("Cancellation requested, no further units admitted")
                    result.cancelled = True
                    exhausted = True
                    break
                try:
                    unit = next(iterator)
                except StopIteration:
                    exhausted = True
                    break
                future = executor.submit(unit.run)
                active[future] = unit
                result.peak_in_flight = max(result.peak_in_flight, len(active))
                log.debug(f"Admitted {unit.name} (active={len(active)}/{limit})")

            if not active:
                continue

            # Block until at least one in-flight unit completes
            done, _ = wait(active.keys(), return_when=FIRST_COMPLETED)
            for future in done:
                unit = active.pop(future)
                error = future.exception()
                if error is None:
                    result.outcomes.append(
                        UnitOutcome(unit.name, UnitStatus.SUCCESS, value=future.result())
                    )
                    log.debug(f"Completed: {unit.name}")
                else:
                    result.outcomes.append(
                        UnitOutcome(unit.name, UnitStatus.FAILED, error=error)
                    )
                    log.error(f"Failed: {unit.name}: {error}")

    log.debug(
        f"Pool finished: {len(result.succeeded)} succeeded, "
        f"{len(result.failed)} failed, peak={result.peak_in_flight}"
    )
    return result
