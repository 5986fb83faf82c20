"""
Batch planning.

:func:`compute_plan` sizes one balanced Extract/Stabilize/Replenish/Stabilize
batch: enough Extract threads to take the desired fraction of the maximum,
enough Replenish threads to bring the value back to ~99% of the maximum, and
one Stabilize count per level-raising step that cancels the level increase
that step causes.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Dict, Mapping, Optional
import warnings

import cadence.constants as c
from cadence.oracle import ResourceState
from cadence.resources import OperationKind, resolve_unit_costs


def _ceil(value: float) -> int:
  # Tolerate float noise such as 2.0000000001 so it does not round up to 3.
  return int(math.ceil(value - c.EPS))


@dataclass(frozen=True)
class BatchPlan:
  """Thread counts for one batch, in finish order."""

  extract: int
  stabilize_extract: int
  replenish: int
  stabilize_replenish: int
  extract_fraction: float

  def threads_by_kind(self) -> Dict[OperationKind, int]:
    return {
      OperationKind.EXTRACT: self.extract,
      OperationKind.REPLENISH: self.replenish,
      OperationKind.STABILIZE: self.stabilize_extract + self.stabilize_replenish,
    }

  @property
  def total_threads(self) -> int:
    return self.extract + self.stabilize_extract + self.replenish + self.stabilize_replenish

  def capacity_cost(self, unit_costs: Mapping[OperationKind, float]) -> float:
    costs = resolve_unit_costs(unit_costs)
    return sum(costs[kind] * threads for kind, threads in self.threads_by_kind().items())


@dataclass(frozen=True)
class PlanPolicy:
  """
  Tunable knobs of the plan calculator.

  Parameters
  ----------
  drain_threshold:
      Planned extraction fractions at or above this value are never issued;
      the desired fraction is scaled by ``halving_factor`` until it drops
      below.
  replenish_target:
      Fraction of ``max_value`` Replenish must restore after extraction.
  halving_factor:
      Multiplier applied to the desired fraction on every retry.
  max_replenish_threads:
      Optional hard cap on Replenish threads per batch.  Capping trades the
      replenish target for a smaller footprint and is reported as a warning.
  unit_costs:
      Per-kind capacity cost used when a capacity ceiling is supplied.
  """

  drain_threshold: float = c.DRAIN_THRESHOLD
  replenish_target: float = c.REPLENISH_TARGET
  halving_factor: float = c.HALVING_FACTOR
  max_replenish_threads: Optional[int] = None
  unit_costs: Optional[Mapping[OperationKind, float]] = None

  def __post_init__(self) -> None:
    if not 0.0 < self.drain_threshold <= 1.0:
      raise ValueError("drain_threshold must be in (0, 1]")
    if not 0.0 < self.replenish_target <= 1.0:
      raise ValueError("replenish_target must be in (0, 1]")
    if not 0.0 < self.halving_factor < 1.0:
      raise ValueError("halving_factor must be in (0, 1)")
    if self.max_replenish_threads is not None and self.max_replenish_threads < 1:
      raise ValueError("max_replenish_threads must be at least 1")
    object.__setattr__(self, "unit_costs", resolve_unit_costs(self.unit_costs))


def minimal_batch_cost(unit_costs: Mapping[OperationKind, float]) -> float:
  """Capacity needed by one thread of each of the four batch steps."""
  costs = resolve_unit_costs(unit_costs)
  return costs[OperationKind.EXTRACT] + costs[OperationKind.REPLENISH] + 2 * costs[OperationKind.STABILIZE]


def _size_batch(state: ResourceState, extract: int, policy: PlanPolicy) -> BatchPlan:
  resource = state.resource
  actual = state.extract_fraction_per_thread * extract

  value = max(1.0, resource.value)
  value_after = max(1.0, value - value * actual)
  factor = max(1.0, policy.replenish_target * resource.max_value / value_after)
  replenish = max(1, _ceil(state.replenish_threads_for(factor)))
  if policy.max_replenish_threads is not None and replenish > policy.max_replenish_threads:
    warnings.warn(
      f"Replenish needs {replenish} threads but is capped at {policy.max_replenish_threads}; "
      "the value will not fully recover this batch.",
      RuntimeWarning,
      stacklevel=3,
    )
    replenish = policy.max_replenish_threads

  per_thread = state.stabilize_per_thread
  stabilize_extract = max(1, _ceil(state.level_increase(OperationKind.EXTRACT, extract) / per_thread))
  stabilize_replenish = max(1, _ceil(state.level_increase(OperationKind.REPLENISH, replenish) / per_thread))

  return BatchPlan(
    extract=extract,
    stabilize_extract=stabilize_extract,
    replenish=replenish,
    stabilize_replenish=stabilize_replenish,
    extract_fraction=actual,
  )


def compute_plan(
  state: ResourceState,
  desired_fraction: float = c.DESIRED_EXTRACT_FRACTION,
  capacity_ceiling: Optional[float] = None,
  policy: Optional[PlanPolicy] = None,
) -> Optional[BatchPlan]:
  """
  Size one batch against ``state``.

  Returns ``None`` when the target is not valid (no maximum, no per-thread
  yield, no way to stabilise) or when even the smallest batch does not fit in
  ``capacity_ceiling``.  The calculation is pure, so repeating it on an
  unchanged state yields the same plan.
  """
  policy = policy or PlanPolicy()
  if not state.is_valid_target or state.stabilize_per_thread <= 0:
    return None
  if desired_fraction <= 0:
    raise ValueError("desired_fraction must be positive")

  if capacity_ceiling is not None and minimal_batch_cost(policy.unit_costs) > capacity_ceiling + c.EPS:
    return None

  per_thread = state.extract_fraction_per_thread
  desired = float(desired_fraction)
  while True:
    extract = max(1, int(math.floor(desired / per_thread + c.EPS)))
    if per_thread * extract >= policy.drain_threshold:
      if extract == 1:
        return None
      desired *= policy.halving_factor
      continue

    plan = _size_batch(state, extract, policy)
    if capacity_ceiling is None or plan.capacity_cost(policy.unit_costs) <= capacity_ceiling + c.EPS:
      return plan
    if extract == 1:
      return None
    desired *= policy.halving_factor
