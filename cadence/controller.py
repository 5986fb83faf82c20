"""
Steady-state control loop.

The controller is the only thing that decides when to act.  Each cycle it
checks for drift, plans, schedules and dispatches one batch, then sleeps
until the batch's last step has landed.  Sleeping is its only suspension
point: launched operations report nothing back, so the controller relies on
the planned finish times alone.
"""

from __future__ import annotations

from collections import deque
import dataclasses
import enum
import time
from typing import Callable, Deque, Optional

import cadence.constants as c
from cadence.dispatch import Dispatcher, DispatchResult, allocation_frame
from cadence.errors import EmptyPoolError, InvalidTargetError
from cadence.oracle import PoolSource, ResourceOracle, ResourceState
from cadence.plan import BatchPlan, PlanPolicy, compute_plan
from cadence.prep import Preparer
from cadence.resources import OperationKind, TargetResource, slot_capacity
from cadence.schedule import build_schedule, last_finish, schedule_frame


# Most recent transitions kept for inspection.
_HISTORY_LENGTH = 256


class ControllerState(str, enum.Enum):
  PREPARING = "preparing"
  PLANNING = "planning"
  SCHEDULING = "scheduling"
  DISPATCHING = "dispatching"
  WAITING = "waiting"


class BatchController:
  """
  Run timed batches against one target indefinitely.

  Parameters
  ----------
  oracle:
      Resource oracle, re-queried every cycle.
  pool_source:
      Callable returning the current worker nodes.
  dispatcher:
      Places and launches schedules; its clock must match ``clock``.
  target_id:
      Target to manage.  Only one controller may drive a target and pool.
  desired_fraction:
      Fraction of the maximum value to extract per batch.
  gap:
      Spacing between consecutive finishes inside a batch.
  plan_policy:
      Planner knobs.  Its unit costs must equal the dispatcher's; leave it
      out to plan with the dispatcher's costs and default thresholds.
  preparer:
      Preparation loop used at start-up and after drift.  Built from the
      other collaborators when omitted.
  drift_value_fraction / drift_level_tolerance:
      A cycle re-prepares when ``value < max * drift_value_fraction`` or
      ``level > min + drift_level_tolerance``.
  backoff:
      Fixed sleep after a failed plan or dispatch.
  safety_margin:
      Added to the wait for the last finish of a launched batch.
  """

  def __init__(
    self,
    oracle: ResourceOracle,
    pool_source: PoolSource,
    dispatcher: Dispatcher,
    target_id: str,
    *,
    desired_fraction: float = c.DESIRED_EXTRACT_FRACTION,
    gap: float = c.DEFAULT_GAP,
    plan_policy: Optional[PlanPolicy] = None,
    preparer: Optional[Preparer] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    drift_value_fraction: float = c.DRIFT_VALUE_FRACTION,
    drift_level_tolerance: float = c.DRIFT_LEVEL_TOLERANCE,
    backoff: float = c.BACKOFF_SECONDS,
    safety_margin: float = c.SAFETY_MARGIN,
    shift_padding: float = c.SHIFT_PADDING,
    max_empty_polls: int = c.MAX_EMPTY_POLLS,
    verbose: bool = True,
  ) -> None:
    if not 0.0 < desired_fraction < 1.0:
      raise ValueError("desired_fraction must be in (0, 1)")
    if gap < c.MIN_GAP:
      raise ValueError(f"gap must be at least {c.MIN_GAP} seconds")
    if not 0.0 < drift_value_fraction <= 1.0:
      raise ValueError("drift_value_fraction must be in (0, 1]")
    if drift_level_tolerance < 0:
      raise ValueError("drift_level_tolerance must be non-negative")
    if max_empty_polls < 1:
      raise ValueError("max_empty_polls must be at least 1")

    self._oracle = oracle
    self._pool_source = pool_source
    self._dispatcher = dispatcher
    self.target_id = str(target_id)
    self._desired_fraction = float(desired_fraction)
    self._gap = float(gap)
    self._clock = clock
    self._sleep = sleep
    self._drift_value_fraction = float(drift_value_fraction)
    self._drift_level_tolerance = float(drift_level_tolerance)
    self._backoff = max(0.0, float(backoff))
    self._safety_margin = max(0.0, float(safety_margin))
    self._shift_padding = float(shift_padding)
    self._max_empty_polls = int(max_empty_polls)
    self.verbose = verbose

    if plan_policy is None:
      plan_policy = PlanPolicy(unit_costs=dispatcher.unit_costs)
    elif dict(plan_policy.unit_costs) != dispatcher.unit_costs:
      raise ValueError("plan_policy.unit_costs must match the dispatcher's unit costs")
    # Plan in whole slots of the dearest kind; a batch that fits the slot
    # count can always be packed, whatever the per-node leftovers.
    self._slot_cost = max(dispatcher.unit_costs.values())
    self._plan_policy = dataclasses.replace(
      plan_policy, unit_costs={kind: self._slot_cost for kind in OperationKind}
    )
    self._preparer = preparer or Preparer(
      oracle,
      pool_source,
      dispatcher,
      clock=clock,
      sleep=sleep,
      backoff=backoff,
      max_replenish_threads=plan_policy.max_replenish_threads,
      max_empty_polls=max_empty_polls,
      verbose=verbose,
    )

    self.state = ControllerState.PREPARING
    self.history: Deque[ControllerState] = deque(maxlen=_HISTORY_LENGTH)
    self.batches_launched = 0
    self._empty_polls = 0

  def _log(self, message: str) -> None:
    if self.verbose:
      print(f"[{self.target_id}] {message}", flush=True)

  def _enter(self, state: ControllerState) -> None:
    self.state = state
    self.history.append(state)

  def has_drifted(self, resource: TargetResource) -> bool:
    return (
      resource.value < resource.max_value * self._drift_value_fraction
      or resource.level > resource.min_level + self._drift_level_tolerance
    )

  def _back_off(self, message: str) -> None:
    self._log(f"{message} Retrying in {self._backoff:.2f}s.")
    self._enter(ControllerState.WAITING)
    self._sleep(self._backoff)

  def run(self, max_cycles: Optional[int] = None) -> int:
    """
    Run the control loop and return the number of batches launched.

    With ``max_cycles=None`` the loop never returns on its own; a bounded
    run counts every cycle, including those that backed off.
    """
    self._log(
      f"Batching with {self._desired_fraction:.1%} extraction per batch and {self._gap:.3f}s gaps."
    )
    self._enter(ControllerState.PREPARING)
    self._preparer.prepare(self.target_id)

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
      cycles += 1
      self.run_cycle()
    return self.batches_launched

  def run_cycle(self) -> Optional[DispatchResult]:
    """Execute one cycle; return the dispatch result, or ``None`` if it backed off before dispatching."""
    self._enter(ControllerState.PLANNING)
    state = ResourceState.capture(self._oracle, self.target_id)
    if self.has_drifted(state.resource):
      self._log("Target drifted from baseline; re-preparing.")
      self._enter(ControllerState.PREPARING)
      self._preparer.prepare(self.target_id)
      self._enter(ControllerState.PLANNING)
      state = ResourceState.capture(self._oracle, self.target_id)

    if not state.is_valid_target or state.stabilize_per_thread <= 0:
      raise InvalidTargetError(self.target_id, "no extractable maximum or no per-thread effect")

    nodes = list(self._pool_source())
    if not nodes:
      self._empty_polls += 1
      if self._empty_polls >= self._max_empty_polls:
        raise EmptyPoolError(f"No worker nodes available after {self._empty_polls} polls.")
      self._back_off("Worker pool is empty.")
      return None
    self._empty_polls = 0

    ceiling = slot_capacity(nodes, self._slot_cost) / self._dispatcher.multiplicity
    plan = compute_plan(state, self._desired_fraction, ceiling, self._plan_policy)
    if plan is None:
      self._back_off(f"Not enough capacity for a batch ({ceiling:.2f} usable).")
      return None

    self._enter(ControllerState.SCHEDULING)
    schedule = build_schedule(
      plan,
      state.durations,
      self._gap,
      self._clock(),
      shift_padding=self._shift_padding,
    )

    self._enter(ControllerState.DISPATCHING)
    result = self._dispatcher.dispatch(schedule, nodes, self.target_id, plan)
    if not result:
      self._back_off(f"Could not launch full batch: {result.reason}")
      return result

    self.batches_launched += 1
    self._report(plan, result)

    self._enter(ControllerState.WAITING)
    wait = max(0.0, last_finish(result.steps) - self._clock()) + self._safety_margin
    self._sleep(wait)
    return result

  def _report(self, plan: BatchPlan, result: DispatchResult) -> None:
    if not self.verbose:
      return
    self._log(
      f"Batch {self.batches_launched} launched: extracting {plan.extract_fraction:.2%} "
      f"with {plan.total_threads} threads x{self._dispatcher.multiplicity}."
    )
    print(schedule_frame(result.steps).to_string(index=False), flush=True)
    if result.allocation is not None:
      print(allocation_frame(result.allocation).to_string(index=False), flush=True)
