"""
Capacity-aware placement and launch of scheduled steps.

Placement happens in two passes.  :func:`allocate_steps` packs every step of
the batch onto the pool against a private copy of the free capacity, so a
batch that cannot be placed in full is rejected before anything runs.  Only
then does :class:`Dispatcher` issue the launches.  A half-launched batch (say
an Extract without its Replenish) leaves the target worse off than no batch
at all.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import time
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import cadence.constants as c
from cadence.oracle import Launcher
from cadence.plan import BatchPlan
from cadence.resources import OperationKind, WorkerNode, resolve_unit_costs
from cadence.schedule import ScheduledStep, StepRole, replicate_schedule


class AllocationError(RuntimeError):
  """Raised when a step's full thread count cannot be placed on the pool."""

  def __init__(self, step: ScheduledStep, missing: int) -> None:
    super().__init__(
      f"Could not place {step.role.value} x{step.thread_count}: missing {missing} threads."
    )
    self.step = step
    self.missing = missing


@dataclass(frozen=True)
class Placement:
  node_id: str
  threads: int


@dataclass
class Allocation:
  """Placements for every step of a batch, plus the capacity left over."""

  steps: List[ScheduledStep]
  placements: List[List[Placement]]
  remaining_capacity: Dict[str, float] = field(default_factory=dict)

  def __iter__(self) -> Iterator[Tuple[ScheduledStep, List[Placement]]]:
    return iter(zip(self.steps, self.placements))

  def threads_on(self, node_id: str) -> int:
    return sum(p.threads for group in self.placements for p in group if p.node_id == node_id)

  def placed_threads(self, index: int) -> int:
    return sum(p.threads for p in self.placements[index])


def allocate_steps(
  steps: Sequence[ScheduledStep],
  nodes: Sequence[WorkerNode],
  unit_costs: Optional[Mapping[OperationKind, float]] = None,
  *,
  max_threads_per_launch: Optional[int] = None,
) -> Allocation:
  """
  Greedily place ``steps`` on ``nodes``.

  Nodes are ordered by descending free capacity.  Each step takes as many
  threads as fit on the node with the most capacity left, then moves on to
  the next, until the step is complete.  Capacity is decremented as threads
  are committed, so later steps see what earlier ones reserved.

  Raises
  ------
  AllocationError
      If any step cannot be placed in full.  Nothing is returned for a
      partial placement.
  """
  costs = resolve_unit_costs(unit_costs)
  if max_threads_per_launch is not None and max_threads_per_launch < 1:
    raise ValueError("max_threads_per_launch must be at least 1")

  initial = np.array([node.free_capacity for node in nodes], dtype=np.float64)
  order = np.argsort(-initial, kind="stable")
  node_ids = [nodes[int(i)].node_id for i in order]
  free = initial[order].copy()

  placements: List[List[Placement]] = []
  for step in steps:
    cost = costs[step.kind]
    remaining = int(step.thread_count)
    group: List[Placement] = []
    while remaining > 0:
      if free.size == 0:
        raise AllocationError(step, remaining)
      idx = int(np.argmax(free))
      fit = int(math.floor(free[idx] / cost + c.EPS))
      if fit <= 0:
        raise AllocationError(step, remaining)
      use = min(remaining, fit)
      if max_threads_per_launch is not None:
        use = min(use, max_threads_per_launch)
      group.append(Placement(node_id=node_ids[idx], threads=use))
      free[idx] = max(0.0, free[idx] - use * cost)
      remaining -= use
    placements.append(group)

  return Allocation(
    steps=list(steps),
    placements=placements,
    remaining_capacity={node_id: float(value) for node_id, value in zip(node_ids, free)},
  )


@dataclass(frozen=True)
class LaunchRecord:
  role: StepRole
  kind: OperationKind
  node_id: str
  threads: int
  start_delay: float


@dataclass
class DispatchResult:
  """Outcome of one dispatch pass; truthy only when every launch was admitted."""

  success: bool
  steps: List[ScheduledStep]
  launches: List[LaunchRecord] = field(default_factory=list)
  allocation: Optional[Allocation] = None
  reason: Optional[str] = None

  def __bool__(self) -> bool:
    return self.success


def _default_spacing(steps: Sequence[ScheduledStep]) -> float:
  finishes = sorted(step.planned_finish_time for step in steps)
  if len(finishes) < 2:
    return c.MIN_GAP
  gaps = np.diff(np.asarray(finishes, dtype=np.float64))
  positive = gaps[gaps > c.EPS]
  step_gap = float(positive.min()) if positive.size else c.MIN_GAP
  return finishes[-1] - finishes[0] + step_gap


class Dispatcher:
  """
  Place a schedule on the worker pool and launch it.

  Parameters
  ----------
  launcher:
      Execution requester; ``launch`` returns whether the request was admitted.
  unit_costs:
      Per-kind capacity cost of one thread.
  clock:
      Time source shared with :func:`~cadence.schedule.build_schedule`.
      Start delays are recomputed against it at issue time so time spent
      between scheduling and launching does not push finishes later.
  max_threads_per_launch:
      Optional cap on the threads carried by a single launch request.
  multiplicity:
      Number of copies of the schedule fired per dispatch.
  batch_spacing:
      Offset between copies.  Defaults to the schedule's finish span plus one
      step gap, so copies follow each other without interleaving.
  """

  def __init__(
    self,
    launcher: Launcher,
    unit_costs: Optional[Mapping[OperationKind, float]] = None,
    *,
    clock: Callable[[], float] = time.monotonic,
    max_threads_per_launch: Optional[int] = None,
    multiplicity: int = 1,
    batch_spacing: Optional[float] = None,
  ) -> None:
    if multiplicity < 1:
      raise ValueError("multiplicity must be at least 1")
    if batch_spacing is not None and batch_spacing <= 0:
      raise ValueError("batch_spacing must be positive")
    if max_threads_per_launch is not None and max_threads_per_launch < 1:
      raise ValueError("max_threads_per_launch must be at least 1")

    self._launcher = launcher
    self._unit_costs = resolve_unit_costs(unit_costs)
    self._clock = clock
    self._max_threads_per_launch = max_threads_per_launch
    self._multiplicity = int(multiplicity)
    self._batch_spacing = batch_spacing

  @property
  def unit_costs(self) -> Dict[OperationKind, float]:
    return dict(self._unit_costs)

  @property
  def multiplicity(self) -> int:
    return self._multiplicity

  def dispatch(
    self,
    schedule: Sequence[ScheduledStep],
    pool: Sequence[WorkerNode],
    target_id: str,
    plan: Optional[BatchPlan] = None,
  ) -> DispatchResult:
    steps = list(schedule)
    if plan is not None and sum(step.thread_count for step in steps) != plan.total_threads:
      raise ValueError("schedule thread counts do not match the plan")
    if not steps:
      return DispatchResult(success=True, steps=[])

    if self._multiplicity > 1:
      spacing = self._batch_spacing if self._batch_spacing is not None else _default_spacing(steps)
      steps = replicate_schedule(steps, self._multiplicity, spacing)

    try:
      allocation = allocate_steps(
        steps,
        pool,
        self._unit_costs,
        max_threads_per_launch=self._max_threads_per_launch,
      )
    except AllocationError as exc:
      return DispatchResult(success=False, steps=steps, reason=str(exc))

    launches: List[LaunchRecord] = []
    for step, group in allocation:
      for placement in group:
        delay = max(0.0, step.start_time - self._clock())
        accepted = self._launcher.launch(step.kind, placement.node_id, placement.threads, target_id, delay)
        if not accepted:
          return DispatchResult(
            success=False,
            steps=steps,
            launches=launches,
            allocation=allocation,
            reason=f"Launch of {step.role.value} x{placement.threads} on {placement.node_id} was rejected.",
          )
        launches.append(
          LaunchRecord(
            role=step.role,
            kind=step.kind,
            node_id=placement.node_id,
            threads=placement.threads,
            start_delay=delay,
          )
        )

    return DispatchResult(success=True, steps=steps, launches=launches, allocation=allocation)


def allocation_frame(allocation: Allocation) -> pd.DataFrame:
  """Tabulate placements (one row per launch) for log output."""
  rows = [
    {"role": step.role.value, "node": placement.node_id, "threads": placement.threads}
    for step, group in allocation
    for placement in group
  ]
  return pd.DataFrame(rows, columns=["role", "node", "threads"])
