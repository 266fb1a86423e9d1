"""
Work units and execution plans.

A work unit is one independently generatable piece of the document (a
chapter). The outline stage produces them; the planner turns them into an
``ExecutionPlan`` of layers that can run concurrently.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class WorkUnit(BaseModel):
    """A declared unit of content with its dependencies."""

    unit_number: int = Field(ge=1)
    title: str = ""
    overview: str = ""
    objectives: list[str] = Field(default_factory=list)
    research_topics: list[str] = Field(default_factory=list)
    dependencies: frozenset[int] = Field(default_factory=frozenset)
    estimated_size: int = Field(default=1500, ge=0, description="Target word count")

    model_config = {"frozen": True, "extra": "allow"}

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        return value

    @property
    def node_id(self) -> str:
        return unit_node_id(self.unit_number)


def unit_node_id(unit_number: int) -> str:
    return f"unit_{unit_number}"


class Outline(BaseModel):
    """Document outline produced by the outline stage."""

    title: str
    subtitle: str | None = None
    units: list[WorkUnit] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def total_size(self) -> int:
        return sum(unit.estimated_size for unit in self.units)

    def get_unit(self, unit_number: int) -> WorkUnit | None:
        for unit in self.units:
            if unit.unit_number == unit_number:
                return unit
        return None


class ExecutionLayer(BaseModel):
    """One layer of the plan: units that may run at the same time."""

    layer_index: int
    unit_numbers: tuple[int, ...]
    node_ids: tuple[str, ...]
    dependencies: tuple[str, ...] = ()  # node ids of the previous layer
    estimated_duration: float = 0.0  # seconds, slowest unit in the layer

    model_config = {"frozen": True}


class ExecutionPlan(BaseModel):
    """Ordered layers plus derived timing and parallelism estimates."""

    layers: tuple[ExecutionLayer, ...] = ()
    parallelism_factor: int = 0
    estimated_total_duration: float = 0.0  # seconds, sum of per-layer maxima

    model_config = {"frozen": True}

    @property
    def total_layers(self) -> int:
        return len(self.layers)

    @property
    def unit_numbers(self) -> list[int]:
        return [n for layer in self.layers for n in layer.unit_numbers]

    def layer_of(self, unit_number: int) -> int | None:
        for layer in self.layers:
            if unit_number in layer.unit_numbers:
                return layer.layer_index
        return None
