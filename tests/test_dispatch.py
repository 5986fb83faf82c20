from __future__ import annotations

import pytest

from cadence.dispatch import AllocationError, Dispatcher, allocate_steps, allocation_frame
from cadence.plan import BatchPlan
from cadence.resources import OperationKind, WorkerNode
from cadence.schedule import build_schedule

from conftest import UNIT_COSTS, FakeClock, FakeLauncher

PLAN = BatchPlan(extract=5, stabilize_extract=1, replenish=12, stabilize_replenish=2, extract_fraction=0.05)

DURATIONS = {
  OperationKind.EXTRACT: 1.0,
  OperationKind.REPLENISH: 3.2,
  OperationKind.STABILIZE: 4.0,
}


def _schedule(now: float = 0.0):
  return build_schedule(PLAN, DURATIONS, gap=0.2, now=now)


def test_dispatch_skips_full_node() -> None:
  clock = FakeClock()
  launcher = FakeLauncher()
  pool = [WorkerNode("full", total_capacity=32.0, used_capacity=32.0), WorkerNode("roomy", total_capacity=128.0)]

  result = Dispatcher(launcher, UNIT_COSTS, clock=clock).dispatch(_schedule(), pool, "target-e", PLAN)

  assert result
  assert launcher.threads_on("full") == 0
  assert launcher.threads_on("roomy") == PLAN.total_threads
  assert [launch[0] for launch in launcher.launches] == [
    OperationKind.EXTRACT,
    OperationKind.STABILIZE,
    OperationKind.REPLENISH,
    OperationKind.STABILIZE,
  ]
  assert all(launch[3] == "target-e" for launch in launcher.launches)


def test_dispatch_one_thread_short_launches_nothing() -> None:
  launcher = FakeLauncher()
  pool = [WorkerNode("a", total_capacity=10.0), WorkerNode("b", total_capacity=PLAN.total_threads - 11.0)]

  result = Dispatcher(launcher, UNIT_COSTS, clock=FakeClock()).dispatch(_schedule(), pool, "target-e", PLAN)

  assert not result
  assert result.launches == []
  assert launcher.launches == []
  assert "missing 1 threads" in result.reason


def test_allocation_splits_across_nodes_largest_first() -> None:
  pool = [WorkerNode("small", total_capacity=4.0), WorkerNode("large", total_capacity=14.0), WorkerNode("mid", total_capacity=6.0)]
  allocation = allocate_steps(_schedule(), pool, UNIT_COSTS)

  for index, step in enumerate(allocation.steps):
    assert allocation.placed_threads(index) == step.thread_count

  # Extract (5) lands on the largest node, Replenish (12) has to spill over.
  extract_placements = allocation.placements[0]
  assert [p.node_id for p in extract_placements] == ["large"]
  replenish_nodes = {p.node_id for p in allocation.placements[2]}
  assert len(replenish_nodes) > 1

  for node in pool:
    assert allocation.threads_on(node.node_id) <= node.free_capacity
    assert allocation.remaining_capacity[node.node_id] >= 0.0
  assert sum(allocation.remaining_capacity.values()) == pytest.approx(24.0 - PLAN.total_threads)


def test_allocation_respects_unit_costs() -> None:
  costs = {OperationKind.EXTRACT: 1.7, OperationKind.REPLENISH: 1.75, OperationKind.STABILIZE: 1.75}
  pool = [WorkerNode("node-a", total_capacity=64.0, reserved_capacity=16.0), WorkerNode("node-b", total_capacity=8.0)]
  allocation = allocate_steps(_schedule(), pool, costs)

  used = {"node-a": 0.0, "node-b": 0.0}
  for step, group in allocation:
    for placement in group:
      used[placement.node_id] += placement.threads * costs[step.kind]
  assert used["node-a"] <= 48.0 + 1e-9
  assert used["node-b"] <= 8.0 + 1e-9


def test_allocation_error_names_the_step() -> None:
  with pytest.raises(AllocationError) as excinfo:
    allocate_steps(_schedule(), [], UNIT_COSTS)
  assert excinfo.value.missing == PLAN.extract


def test_max_threads_per_launch_splits_launches() -> None:
  launcher = FakeLauncher()
  pool = [WorkerNode("node-a", total_capacity=100.0)]
  dispatcher = Dispatcher(launcher, UNIT_COSTS, clock=FakeClock(), max_threads_per_launch=5)

  assert dispatcher.dispatch(_schedule(), pool, "target-f", PLAN)
  assert max(launch[2] for launch in launcher.launches) <= 5
  replenish = [launch[2] for launch in launcher.launches if launch[0] is OperationKind.REPLENISH]
  assert replenish == [5, 5, 2]


def test_rejected_launch_fails_dispatch() -> None:
  launcher = FakeLauncher(accept_limit=2)
  pool = [WorkerNode("node-a", total_capacity=100.0)]

  result = Dispatcher(launcher, UNIT_COSTS, clock=FakeClock()).dispatch(_schedule(), pool, "target-f", PLAN)

  assert not result
  assert len(result.launches) == 2
  assert launcher.rejected == 1
  assert "rejected" in result.reason


def test_start_delay_recomputed_at_issue_time() -> None:
  clock = FakeClock(start=50.0)
  schedule = _schedule(now=50.0)
  clock.now = 50.5
  launcher = FakeLauncher()

  Dispatcher(launcher, UNIT_COSTS, clock=clock).dispatch(schedule, [WorkerNode("node-a", 100.0)], "target-g")

  for step, launch in zip(schedule, launcher.launches):
    assert launch[4] == pytest.approx(max(0.0, step.start_delay - 0.5))


def test_multiplicity_fires_offset_copies() -> None:
  launcher = FakeLauncher()
  pool = [WorkerNode("node-a", total_capacity=100.0)]
  dispatcher = Dispatcher(launcher, UNIT_COSTS, clock=FakeClock(), multiplicity=2)

  result = dispatcher.dispatch(_schedule(), pool, "target-h", PLAN)

  assert result
  assert len(result.steps) == 8
  assert len(launcher.launches) == 8
  finishes = [step.planned_finish_time for step in result.steps]
  # Second copy starts after the first copy's last finish.
  assert min(finishes[4:]) > max(finishes[:4])
  assert finishes == sorted(finishes)


def test_multiplicity_is_all_or_nothing() -> None:
  launcher = FakeLauncher()
  pool = [WorkerNode("node-a", total_capacity=float(PLAN.total_threads) * 2 - 1)]
  dispatcher = Dispatcher(launcher, UNIT_COSTS, clock=FakeClock(), multiplicity=2)

  assert not dispatcher.dispatch(_schedule(), pool, "target-h", PLAN)
  assert launcher.launches == []


def test_dispatch_rejects_mismatched_plan() -> None:
  other = BatchPlan(extract=1, stabilize_extract=1, replenish=1, stabilize_replenish=1, extract_fraction=0.01)
  with pytest.raises(ValueError):
    Dispatcher(FakeLauncher(), UNIT_COSTS, clock=FakeClock()).dispatch(_schedule(), [], "target-b", other)


def test_dispatcher_validation() -> None:
  with pytest.raises(ValueError):
    Dispatcher(FakeLauncher(), multiplicity=0)
  with pytest.raises(ValueError):
    Dispatcher(FakeLauncher(), batch_spacing=0.0)
  with pytest.raises(ValueError):
    Dispatcher(FakeLauncher(), max_threads_per_launch=0)


def test_allocation_frame_has_one_row_per_launch() -> None:
  allocation = allocate_steps(_schedule(), [WorkerNode("a", 10.0), WorkerNode("b", 10.0)], UNIT_COSTS)
  frame = allocation_frame(allocation)
  assert frame["threads"].sum() == PLAN.total_threads
  assert set(frame["node"]) <= {"a", "b"}
