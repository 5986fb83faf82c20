"""
Resource and worker-pool model for the batch scheduler.

A :class:`WorkerNode` is an immutable snapshot of one node's capacity, taken
fresh every cycle by whatever enumerates the pool.  The helpers here answer
the single question the planner and dispatcher ask of the pool: how many
threads of a given operation kind fit on a node right now.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import math
import socket
from typing import Dict, Iterable, Mapping, Optional

import psutil

import cadence.constants as c


class OperationKind(str, enum.Enum):
  EXTRACT = "extract"
  REPLENISH = "replenish"
  STABILIZE = "stabilize"


@dataclass(frozen=True)
class TargetResource:
  """
  Point-in-time reading of the managed resource.

  Parameters
  ----------
  target_id:
      Identifier understood by the oracle and the launcher.
  value / max_value:
      Current and maximum value.  Extract lowers ``value``; Replenish raises
      it back toward ``max_value``.
  level / min_level:
      Current and minimum decay level.  Extract and Replenish raise it,
      Stabilize lowers it.
  """

  target_id: str
  value: float
  max_value: float
  level: float
  min_level: float

  def __post_init__(self) -> None:
    object.__setattr__(self, "value", max(0.0, float(self.value)))
    object.__setattr__(self, "max_value", float(self.max_value))
    object.__setattr__(self, "level", float(self.level))
    object.__setattr__(self, "min_level", max(0.0, float(self.min_level)))

  @property
  def value_fraction(self) -> float:
    if self.max_value <= 0:
      return 0.0
    return self.value / self.max_value

  @property
  def level_excess(self) -> float:
    return max(0.0, self.level - self.min_level)


@dataclass(frozen=True)
class WorkerNode:
  """Capacity snapshot of a single worker node."""

  node_id: str
  total_capacity: float
  used_capacity: float = 0.0
  reserved_capacity: float = 0.0

  def __post_init__(self) -> None:
    object.__setattr__(self, "node_id", str(self.node_id))
    object.__setattr__(self, "total_capacity", max(0.0, float(self.total_capacity)))
    object.__setattr__(self, "used_capacity", max(0.0, float(self.used_capacity)))
    object.__setattr__(self, "reserved_capacity", max(0.0, float(self.reserved_capacity)))

  @property
  def free_capacity(self) -> float:
    return max(0.0, self.total_capacity - self.used_capacity - self.reserved_capacity)

  def threads_that_fit(self, unit_cost: float) -> int:
    return threads_within(self.free_capacity, unit_cost)


def threads_within(capacity: float, unit_cost: float) -> int:
  """Return how many threads costing ``unit_cost`` fit into ``capacity``."""
  if unit_cost <= 0:
    raise ValueError("unit_cost must be positive")
  if capacity <= 0:
    return 0
  return int(math.floor(capacity / unit_cost + c.EPS))


def resolve_unit_costs(unit_costs: Optional[Mapping[OperationKind, float]] = None) -> Dict[OperationKind, float]:
  """
  Fill in a complete per-kind cost table.

  Kinds missing from ``unit_costs`` fall back to ``DEFAULT_UNIT_COST``;
  non-positive costs are rejected.
  """
  resolved = {kind: c.DEFAULT_UNIT_COST for kind in OperationKind}
  for key, value in (unit_costs or {}).items():
    kind = OperationKind(key)
    cost = float(value)
    if cost <= 0:
      raise ValueError(f"unit cost for {kind.value} must be positive")
    resolved[kind] = cost
  return resolved


def total_free_capacity(nodes: Iterable[WorkerNode]) -> float:
  return sum(node.free_capacity for node in nodes)


def slot_capacity(nodes: Iterable[WorkerNode], slot_cost: float) -> float:
  """
  Capacity usable by whole threads of up to ``slot_cost`` each.

  Leftovers smaller than one slot are dropped node by node, so any mix of
  threads whose count fits in the returned slots can be placed.
  """
  return sum(threads_within(node.free_capacity, slot_cost) for node in nodes) * slot_cost


def detect_local_node(*, reserved_gb: float = 0.0, node_id: Optional[str] = None) -> WorkerNode:
  """
  Snapshot the local machine as a worker node, in gigabytes of memory.

  ``reserved_gb`` keeps a slice of memory away from the scheduler, e.g. for
  the coordinator process itself.
  """
  memory = psutil.virtual_memory()
  total_gb = memory.total / 1e9
  used_gb = (memory.total - memory.available) / 1e9
  return WorkerNode(
    node_id=node_id or socket.gethostname(),
    total_capacity=total_gb,
    used_capacity=used_gb,
    reserved_capacity=reserved_gb,
  )
