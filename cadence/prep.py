"""
Drive a target to its prepped baseline before steady-state batching.

Preparation runs Replenish and Stabilize only, with no finish-order
constraint: each round fires what capacity allows, sleeps until the slower
operation lands, then re-reads the target.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Optional, Sequence, Tuple

import cadence.constants as c
from cadence.dispatch import Dispatcher
from cadence.errors import EmptyPoolError, InvalidTargetError
from cadence.oracle import PoolSource, ResourceOracle, ResourceState
from cadence.resources import OperationKind, TargetResource, WorkerNode, slot_capacity, threads_within
from cadence.schedule import build_prep_schedule


def is_prepped(
  resource: TargetResource,
  *,
  value_fraction: float = c.PREP_VALUE_FRACTION,
  level_epsilon: float = c.PREP_LEVEL_EPSILON,
) -> bool:
  return (
    resource.value >= resource.max_value * value_fraction
    and resource.level <= resource.min_level + level_epsilon
  )


class Preparer:
  """
  Preparation loop.

  Parameters
  ----------
  oracle / pool_source / dispatcher:
      Collaborators queried fresh every round.
  value_fraction / level_epsilon:
      Baseline thresholds; the loop exits once ``value >= max * value_fraction``
      and ``level <= min + level_epsilon``.
  stabilize_share:
      Fraction of free capacity reserved for Stabilize when both operations
      are needed and do not fit together.  Stabilize is served first and
      also takes whatever Replenish leaves over, since a rising level slows
      Replenish down.
  max_replenish_threads:
      Optional per-round cap on Replenish threads.
  margin:
      Added to the longer operation duration before re-checking.
  backoff:
      Sleep applied when nothing could be placed or launched.
  max_empty_polls:
      Consecutive empty pool enumerations tolerated before giving up.
  """

  def __init__(
    self,
    oracle: ResourceOracle,
    pool_source: PoolSource,
    dispatcher: Dispatcher,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    value_fraction: float = c.PREP_VALUE_FRACTION,
    level_epsilon: float = c.PREP_LEVEL_EPSILON,
    stabilize_share: float = c.STABILIZE_SHARE,
    max_replenish_threads: Optional[int] = None,
    margin: float = c.PREP_MARGIN,
    backoff: float = c.BACKOFF_SECONDS,
    max_empty_polls: int = c.MAX_EMPTY_POLLS,
    verbose: bool = True,
  ) -> None:
    if not 0.0 < value_fraction <= 1.0:
      raise ValueError("value_fraction must be in (0, 1]")
    if level_epsilon < 0:
      raise ValueError("level_epsilon must be non-negative")
    if not 0.0 < stabilize_share < 1.0:
      raise ValueError("stabilize_share must be in (0, 1)")
    if max_replenish_threads is not None and max_replenish_threads < 1:
      raise ValueError("max_replenish_threads must be at least 1")
    if max_empty_polls < 1:
      raise ValueError("max_empty_polls must be at least 1")

    self._oracle = oracle
    self._pool_source = pool_source
    self._dispatcher = dispatcher
    self._clock = clock
    self._sleep = sleep
    self._value_fraction = float(value_fraction)
    self._level_epsilon = float(level_epsilon)
    self._stabilize_share = float(stabilize_share)
    self._max_replenish_threads = max_replenish_threads
    self._margin = max(0.0, float(margin))
    self._backoff = max(0.0, float(backoff))
    self._max_empty_polls = int(max_empty_polls)
    self.verbose = verbose

  def _log(self, message: str) -> None:
    if self.verbose:
      print(f"[prep] {message}", flush=True)

  def is_prepped(self, resource: TargetResource) -> bool:
    return is_prepped(resource, value_fraction=self._value_fraction, level_epsilon=self._level_epsilon)

  def needed_threads(self, state: ResourceState) -> Tuple[int, int]:
    """Return ``(stabilize, replenish)`` threads that would reach the baseline in one round."""
    resource = state.resource
    replenish = 0
    if resource.value < resource.max_value * self._value_fraction:
      factor = resource.max_value / max(1.0, resource.value)
      replenish = max(1, int(math.ceil(state.replenish_threads_for(factor) - c.EPS)))
      if self._max_replenish_threads is not None:
        replenish = min(replenish, self._max_replenish_threads)

    excess = resource.level_excess + state.level_increase(OperationKind.REPLENISH, replenish)
    stabilize = 0
    if excess > c.EPS:
      stabilize = max(1, int(math.ceil(excess / state.stabilize_per_thread - c.EPS)))
    return stabilize, replenish

  def fit_to_capacity(self, stabilize: int, replenish: int, nodes: Sequence[WorkerNode]) -> Tuple[int, int]:
    """Shrink ``(stabilize, replenish)`` to what the pool can hold this round."""
    costs = self._dispatcher.unit_costs
    cost_s = costs[OperationKind.STABILIZE]
    cost_r = costs[OperationKind.REPLENISH]
    budget = slot_capacity(nodes, max(cost_s, cost_r))

    if stabilize * cost_s + replenish * cost_r <= budget + c.EPS:
      return stabilize, replenish

    if stabilize and replenish:
      stab_fit = min(stabilize, threads_within(budget * self._stabilize_share, cost_s))
      if stab_fit == 0:
        stab_fit = min(stabilize, threads_within(budget, cost_s))
      rep_fit = min(replenish, threads_within(budget - stab_fit * cost_s, cost_r))
      stab_fit = min(stabilize, threads_within(budget - rep_fit * cost_r, cost_s))
      return stab_fit, rep_fit

    return (
      min(stabilize, threads_within(budget, cost_s)),
      min(replenish, threads_within(budget, cost_r)),
    )

  def prepare(self, target_id: str, *, max_rounds: Optional[int] = None) -> int:
    """
    Block until ``target_id`` is prepped and return the number of rounds launched.

    ``max_rounds`` bounds the number of loop iterations (launched or backed
    off); ``None`` loops until the baseline is reached.
    """
    rounds = 0
    iterations = 0
    empty_polls = 0
    while max_rounds is None or iterations < max_rounds:
      iterations += 1
      state = ResourceState.capture(self._oracle, target_id)
      resource = state.resource
      if resource.max_value <= 0:
        raise InvalidTargetError(target_id, "maximum value is not positive")
      if self.is_prepped(resource):
        if rounds:
          self._log(f"{target_id} prepped after {rounds} round(s).")
        return rounds
      if state.stabilize_per_thread <= 0:
        raise InvalidTargetError(target_id, "stabilize has no effect per thread")

      nodes = list(self._pool_source())
      if not nodes:
        empty_polls += 1
        if empty_polls >= self._max_empty_polls:
          raise EmptyPoolError(f"No worker nodes available after {empty_polls} polls.")
        self._sleep(self._backoff)
        continue
      empty_polls = 0

      wanted = self.needed_threads(state)
      stabilize, replenish = self.fit_to_capacity(*wanted, nodes)
      if stabilize + replenish == 0:
        self._log("Waiting for capacity...")
        self._sleep(self._backoff)
        continue

      steps = build_prep_schedule(stabilize, replenish, state.durations, self._clock())
      result = self._dispatcher.dispatch(steps, nodes, target_id)
      if not result:
        self._log(f"Dispatch failed ({result.reason}); retrying.")
        self._sleep(self._backoff)
        continue

      rounds += 1
      self._log(
        f"Round {rounds}: value {resource.value_fraction:.1%} of max, level +{resource.level_excess:.3f}; "
        f"launched stabilize x{stabilize} (wanted {wanted[0]}), replenish x{replenish} (wanted {wanted[1]})."
      )
      wait = max(step.duration for step in steps) + self._margin
      self._sleep(wait)

    return rounds
