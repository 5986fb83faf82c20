from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple

import pytest

from cadence.resources import OperationKind, WorkerNode


class FakeOracle:
  """In-memory target with multiplicative replenish and linear level effects."""

  def __init__(
    self,
    *,
    value: float = 1000.0,
    max_value: float = 1000.0,
    level: float = 1.0,
    min_level: float = 1.0,
    extract_per_thread: float = 0.01,
    stabilize_per_thread: float = 0.05,
    extract_level: float = 0.002,
    replenish_level: float = 0.004,
    growth_per_thread: float = 1.05,
    durations: Optional[Dict[OperationKind, float]] = None,
  ) -> None:
    self.value = value
    self.max_value = max_value
    self.level = level
    self.min_level = min_level
    self.extract_per_thread = extract_per_thread
    self.stabilize_per_thread = stabilize_per_thread
    self.extract_level = extract_level
    self.replenish_level = replenish_level
    self.growth_per_thread = growth_per_thread
    self.durations = durations or {
      OperationKind.EXTRACT: 1.0,
      OperationKind.REPLENISH: 3.2,
      OperationKind.STABILIZE: 4.0,
    }

  def get_value(self, target_id: str) -> float:
    return self.value

  def get_max_value(self, target_id: str) -> float:
    return self.max_value

  def get_level(self, target_id: str) -> float:
    return self.level

  def get_min_level(self, target_id: str) -> float:
    return self.min_level

  def get_duration(self, kind: OperationKind, target_id: str) -> float:
    return self.durations[kind]

  def per_thread_effect(self, kind: OperationKind, target_id: str) -> float:
    if kind is OperationKind.EXTRACT:
      return self.extract_per_thread
    if kind is OperationKind.STABILIZE:
      return self.stabilize_per_thread
    return self.growth_per_thread - 1.0

  def threads_for_effect(self, kind: OperationKind, target_id: str, multiplier: float) -> float:
    if multiplier <= 1.0:
      return 0.0
    return math.log(multiplier) / math.log(self.growth_per_thread)

  def level_increase(self, kind: OperationKind, target_id: str, threads: int) -> float:
    if kind is OperationKind.EXTRACT:
      return self.extract_level * threads
    if kind is OperationKind.REPLENISH:
      return self.replenish_level * threads
    return 0.0

  def apply(self, kind: OperationKind, threads: int) -> None:
    if kind is OperationKind.EXTRACT:
      self.value -= self.value * min(1.0, self.extract_per_thread * threads)
      self.level += self.extract_level * threads
    elif kind is OperationKind.REPLENISH:
      self.value = min(self.max_value, max(1.0, self.value) * self.growth_per_thread ** threads)
      self.level += self.replenish_level * threads
    else:
      self.level = max(self.min_level, self.level - self.stabilize_per_thread * threads)


class FakeLauncher:
  """Records launches; optionally applies their effect at once or rejects after a quota."""

  def __init__(self, oracle: Optional[FakeOracle] = None, *, accept_limit: Optional[int] = None) -> None:
    self.oracle = oracle
    self.accept_limit = accept_limit
    self.launches: List[Tuple[OperationKind, str, int, str, float]] = []
    self.rejected = 0

  def launch(self, kind: OperationKind, node_id: str, threads: int, target_id: str, start_delay: float) -> bool:
    if self.accept_limit is not None and len(self.launches) >= self.accept_limit:
      self.rejected += 1
      return False
    self.launches.append((kind, node_id, threads, target_id, start_delay))
    if self.oracle is not None:
      self.oracle.apply(kind, threads)
    return True

  def threads_on(self, node_id: str) -> int:
    return sum(launch[2] for launch in self.launches if launch[1] == node_id)


class FakeClock:
  def __init__(self, start: float = 0.0) -> None:
    self.now = start
    self.sleeps: List[float] = []

  def __call__(self) -> float:
    return self.now

  def sleep(self, seconds: float) -> None:
    self.sleeps.append(seconds)
    self.now += seconds


UNIT_COSTS = {
  OperationKind.EXTRACT: 1.0,
  OperationKind.REPLENISH: 1.0,
  OperationKind.STABILIZE: 1.0,
}


@pytest.fixture
def oracle() -> FakeOracle:
  return FakeOracle()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def unit_costs() -> Dict[OperationKind, float]:
  return dict(UNIT_COSTS)


@pytest.fixture
def big_pool() -> List[WorkerNode]:
  return [WorkerNode("node-a", total_capacity=1024.0, used_capacity=24.0)]
