"""
Layer-by-layer parallel execution of an ``ExecutionPlan``.

Units in a layer run concurrently, capped by a semaphore; each layer is a
barrier, so no unit of layer *k+1* starts before every unit of layer *k* has
resolved. A unit failure never cancels its siblings: every outcome is
collected and the caller decides what the stage as a whole does.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from bookflow.errors import ValidationError
from bookflow.schemas.work_unit import ExecutionPlan, WorkUnit

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 5


class UnitOutcomeStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class UnitOutcome:
    """What happened to one unit."""

    unit_number: int
    status: UnitOutcomeStatus
    result: Any = None
    error: BaseException | None = None
    duration: float = 0.0  # seconds

    @property
    def ok(self) -> bool:
        return self.status == UnitOutcomeStatus.COMPLETED


@dataclass
class LayerOutcome:
    """All unit outcomes of one layer, in the layer's unit order."""

    layer_index: int
    outcomes: list[UnitOutcome] = field(default_factory=list)
    duration: float = 0.0

    @property
    def succeeded(self) -> list[int]:
        return [o.unit_number for o in self.outcomes if o.status == UnitOutcomeStatus.COMPLETED]

    @property
    def failed(self) -> list[int]:
        return [o.unit_number for o in self.outcomes if o.status == UnitOutcomeStatus.FAILED]

    @property
    def skipped(self) -> list[int]:
        return [o.unit_number for o in self.outcomes if o.status == UnitOutcomeStatus.SKIPPED]

    @property
    def all_succeeded(self) -> bool:
        return all(o.ok for o in self.outcomes)


async def execute_layers(
    plan: ExecutionPlan,
    units: Iterable[WorkUnit],
    run_unit: Callable[[WorkUnit], Awaitable[Any]],
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    *,
    on_layer_complete: Callable[[LayerOutcome], None] | None = None,
) -> list[LayerOutcome]:
    """
    Run ``run_unit`` for every unit of ``plan``, one layer at a time.

    A unit raising is recorded as ``failed``. A unit with a failed or skipped
    dependency is recorded as ``skipped`` and ``run_unit`` is never called
    for it.

    Args:
        plan: Layers to execute
        units: The units the plan was built from
        run_unit: Coroutine function producing one unit's result
        max_concurrency: Most units in flight at once
        on_layer_complete: Called after each layer's barrier
    """
    if max_concurrency < 1:
        raise ValidationError(f"max_concurrency must be >= 1, got {max_concurrency}")

    by_number = {u.unit_number: u for u in units}
    missing = [n for n in plan.unit_numbers if n not in by_number]
    if missing:
        raise ValidationError(f"Plan references undeclared units {missing}")

    semaphore = asyncio.Semaphore(max_concurrency)
    unavailable: set[int] = set()  # failed or skipped
    results: list[LayerOutcome] = []

    async def run_one(unit: WorkUnit) -> UnitOutcome:
        async with semaphore:
            start = time.perf_counter()
            try:
                value = await run_unit(unit)
            except Exception as e:
                logger.error(
                    f"      ✗ Unit {unit.unit_number}: {e}",
                    extra={"event": "unit_failed", "unit_number": unit.unit_number},
                )
                return UnitOutcome(
                    unit.unit_number,
                    UnitOutcomeStatus.FAILED,
                    error=e,
                    duration=time.perf_counter() - start,
                )
            logger.info(
                f"      ✓ Unit {unit.unit_number}: done",
                extra={"event": "unit_completed", "unit_number": unit.unit_number},
            )
            return UnitOutcome(
                unit.unit_number,
                UnitOutcomeStatus.COMPLETED,
                result=value,
                duration=time.perf_counter() - start,
            )

    for layer in plan.layers:
        layer_start = time.perf_counter()
        runnable: list[WorkUnit] = []
        skipped: dict[int, UnitOutcome] = {}
        for number in layer.unit_numbers:
            unit = by_number[number]
            blocked = sorted(unit.dependencies & unavailable)
            if blocked:
                logger.warning(
                    f"      ⊘ Unit {number}: skipped, dependencies {blocked} unavailable",
                    extra={"event": "unit_skipped", "unit_number": number},
                )
                skipped[number] = UnitOutcome(number, UnitOutcomeStatus.SKIPPED)
            else:
                runnable.append(unit)

        logger.info(
            f"   ⑃ Layer {layer.layer_index}: running {len(runnable)} units "
            f"(max {max_concurrency} at once)",
            extra={"event": "layer_started"},
        )
        ran = await asyncio.gather(*(run_one(u) for u in runnable))
        by_unit = {o.unit_number: o for o in ran} | skipped

        outcome = LayerOutcome(
            layer_index=layer.layer_index,
            outcomes=[by_unit[n] for n in layer.unit_numbers],
            duration=time.perf_counter() - layer_start,
        )
        unavailable.update(outcome.failed)
        unavailable.update(outcome.skipped)
        results.append(outcome)

        logger.info(
            f"   Layer {layer.layer_index} complete: {len(outcome.succeeded)}/"
            f"{len(outcome.outcomes)} units succeeded",
            extra={"event": "layer_completed"},
        )
        if on_layer_complete:
            on_layer_complete(outcome)

    return results
