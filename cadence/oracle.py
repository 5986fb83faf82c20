"""
Contracts for the external collaborators and the per-cycle resource snapshot.

Nothing in the scheduler queries external state implicitly: every cycle
captures a :class:`ResourceState` from the oracle and passes it down.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Protocol, Sequence

from cadence.resources import OperationKind, TargetResource, WorkerNode


class ResourceOracle(Protocol):
  """Reports the current state of a target and the effect of operations on it."""

  def get_value(self, target_id: str) -> float: ...

  def get_max_value(self, target_id: str) -> float: ...

  def get_level(self, target_id: str) -> float: ...

  def get_min_level(self, target_id: str) -> float: ...

  def get_duration(self, kind: OperationKind, target_id: str) -> float: ...

  def per_thread_effect(self, kind: OperationKind, target_id: str) -> float:
    """Extract: fraction of value taken per thread.  Stabilize: level removed per thread."""
    ...

  def threads_for_effect(self, kind: OperationKind, target_id: str, multiplier: float) -> float:
    """Threads of ``kind`` needed to multiply the value by ``multiplier``."""
    ...

  def level_increase(self, kind: OperationKind, target_id: str, threads: int) -> float:
    """Level added by ``threads`` threads of ``kind``."""
    ...


class Launcher(Protocol):
  def launch(
    self,
    kind: OperationKind,
    node_id: str,
    threads: int,
    target_id: str,
    start_delay: float,
  ) -> bool:
    """Submit one operation; ``True`` means admitted, not completed."""
    ...


PoolSource = Callable[[], Sequence[WorkerNode]]


@dataclass(frozen=True)
class ResourceState:
  """
  Snapshot of a target plus the oracle answers the planner needs.

  Scalar readings (value, level, durations, per-thread effects) are captured
  once.  The two state-dependent functions, replenish sizing and level
  increase, are answered by the oracle bound at capture time, so a snapshot
  must not outlive the cycle that took it.
  """

  resource: TargetResource
  durations: Mapping[OperationKind, float]
  extract_fraction_per_thread: float
  stabilize_per_thread: float
  oracle: ResourceOracle = field(repr=False, compare=False)

  @classmethod
  def capture(cls, oracle: ResourceOracle, target_id: str) -> "ResourceState":
    resource = TargetResource(
      target_id=target_id,
      value=oracle.get_value(target_id),
      max_value=oracle.get_max_value(target_id),
      level=oracle.get_level(target_id),
      min_level=oracle.get_min_level(target_id),
    )
    durations: Dict[OperationKind, float] = {
      kind: float(oracle.get_duration(kind, target_id)) for kind in OperationKind
    }
    return cls(
      resource=resource,
      durations=durations,
      extract_fraction_per_thread=float(oracle.per_thread_effect(OperationKind.EXTRACT, target_id)),
      stabilize_per_thread=float(oracle.per_thread_effect(OperationKind.STABILIZE, target_id)),
      oracle=oracle,
    )

  @property
  def target_id(self) -> str:
    return self.resource.target_id

  @property
  def is_valid_target(self) -> bool:
    return self.resource.max_value > 0 and self.extract_fraction_per_thread > 0

  def replenish_threads_for(self, multiplier: float) -> float:
    return float(self.oracle.threads_for_effect(OperationKind.REPLENISH, self.target_id, multiplier))

  def level_increase(self, kind: OperationKind, threads: int) -> float:
    if threads <= 0:
      return 0.0
    return float(self.oracle.level_increase(kind, self.target_id, threads))
