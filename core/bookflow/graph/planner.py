"""
Dependency resolver and execution planner.

Turns a flat list of ``WorkUnit`` into an ``ExecutionPlan``: an ordered list
of layers where every unit in layer *i* depends only on units in layers
*j < i*. Layers run one after another; units inside a layer run
concurrently, so the plan's critical path is the sum of the per-layer
maxima.

    plan = build_execution_plan(outline.units)
    for layer in plan.layers:
        ...
"""

import logging
from collections.abc import Iterable, Sequence

from bookflow.errors import DependencyCycleError, ValidationError
from bookflow.schemas.work_unit import ExecutionLayer, ExecutionPlan, WorkUnit, unit_node_id

logger = logging.getLogger(__name__)

# Duration model: a 1500-word unit takes about five minutes on its own.
BASE_UNIT_DURATION = 300.0  # seconds
REFERENCE_UNIT_SIZE = 1500
MIN_SIZE_FACTOR = 0.5
MAX_SIZE_FACTOR = 2.0
PARALLEL_EFFICIENCY = 0.8


def _check_units(units: Sequence[WorkUnit]) -> None:
    seen: set[int] = set()
    for unit in units:
        if unit.unit_number in seen:
            raise ValidationError(
                f"Duplicate unit number {unit.unit_number}",
                context={"unit_number": unit.unit_number},
            )
        seen.add(unit.unit_number)

    for unit in units:
        unknown = sorted(dep for dep in unit.dependencies if dep not in seen)
        if unknown:
            raise ValidationError(
                f"Unit {unit.unit_number} depends on unknown units {unknown}",
                context={"unit_number": unit.unit_number, "unknown_dependencies": unknown},
            )


def resolve_dependency_layers(units: Iterable[WorkUnit]) -> list[list[WorkUnit]]:
    """
    Group units into dependency layers.

    Each pass takes every remaining unit whose dependencies are all in
    earlier layers, ordered by ascending ``unit_number``. Output is fully
    determined by the input set.

    Raises:
        ValidationError: duplicate unit numbers or a dependency on a unit
            that is not in ``units``
        DependencyCycleError: the dependencies contain a cycle (a unit that
            depends on itself included)
    """
    pending = sorted(units, key=lambda u: u.unit_number)
    _check_units(pending)

    completed: set[int] = set()
    layers: list[list[WorkUnit]] = []

    while pending:
        ready = [u for u in pending if u.dependencies <= completed]
        if not ready:
            unresolved = [u.unit_number for u in pending]
            logger.error(
                f"Circular dependency among units {unresolved}",
                extra={"event": "dependency_cycle"},
            )
            raise DependencyCycleError(
                f"Circular dependency detected among units {unresolved}",
                unresolved=unresolved,
            )

        layers.append(ready)
        completed.update(u.unit_number for u in ready)
        ready_numbers = {u.unit_number for u in ready}
        pending = [u for u in pending if u.unit_number not in ready_numbers]

    return layers


def estimate_unit_duration(unit: WorkUnit) -> float:
    """Estimated generation time for ``unit`` in seconds."""
    size_factor = unit.estimated_size / REFERENCE_UNIT_SIZE
    size_factor = min(max(size_factor, MIN_SIZE_FACTOR), MAX_SIZE_FACTOR)
    return BASE_UNIT_DURATION * size_factor * PARALLEL_EFFICIENCY


def build_execution_plan(units: Iterable[WorkUnit]) -> ExecutionPlan:
    """
    Compute the execution plan for ``units``.

    Zero units give an empty plan. Errors from ``resolve_dependency_layers``
    propagate unchanged; no partial plan is ever returned.
    """
    layers = resolve_dependency_layers(units)

    plan_layers: list[ExecutionLayer] = []
    previous_ids: tuple[str, ...] = ()
    for index, layer in enumerate(layers):
        node_ids = tuple(unit_node_id(u.unit_number) for u in layer)
        plan_layers.append(
            ExecutionLayer(
                layer_index=index,
                unit_numbers=tuple(u.unit_number for u in layer),
                node_ids=node_ids,
                dependencies=previous_ids,
                estimated_duration=max(estimate_unit_duration(u) for u in layer),
            )
        )
        previous_ids = node_ids

    plan = ExecutionPlan(
        layers=tuple(plan_layers),
        parallelism_factor=max((len(layer) for layer in layers), default=0),
        estimated_total_duration=sum(layer.estimated_duration for layer in plan_layers),
    )
    logger.info(
        f"Built execution plan: {plan.total_layers} layers, "
        f"parallelism {plan.parallelism_factor}, "
        f"~{plan.estimated_total_duration:.0f}s",
        extra={"event": "plan_built"},
    )
    return plan


def verify_layering(plan: ExecutionPlan, units: Iterable[WorkUnit]) -> list[str]:
    """
    Check that every dependency of a layer-*i* unit sits in a layer *j < i*.

    Returns a list of violations (empty when the plan is correct).
    """
    by_number = {u.unit_number: u for u in units}
    violations: list[str] = []

    for layer in plan.layers:
        for number in layer.unit_numbers:
            unit = by_number.get(number)
            if unit is None:
                violations.append(f"Unit {number} in layer {layer.layer_index} is not declared")
                continue
            for dep in sorted(unit.dependencies):
                dep_layer = plan.layer_of(dep)
                if dep_layer is None or dep_layer >= layer.layer_index:
                    violations.append(
                        f"Unit {number} in layer {layer.layer_index} depends on unit {dep} "
                        f"in layer {dep_layer}"
                    )

    missing = sorted(set(by_number) - set(plan.unit_numbers))
    for number in missing:
        violations.append(f"Unit {number} is missing from the plan")
    return violations
