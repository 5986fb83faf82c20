"""
Turn a batch plan into start delays that make the steps finish in order.

Finish order is guaranteed by construction: each step's start is its planned
finish minus its duration.  Nothing at runtime re-validates the order, so the
durations must be queried in the same cycle the schedule is built.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import enum
from typing import List, Mapping, Sequence

import numpy as np
import pandas as pd

import cadence.constants as c
from cadence.plan import BatchPlan
from cadence.resources import OperationKind


class StepRole(str, enum.Enum):
  EXTRACT = "extract"
  STABILIZE_EXTRACT = "stabilize_extract"
  REPLENISH = "replenish"
  STABILIZE_REPLENISH = "stabilize_replenish"

  @property
  def kind(self) -> OperationKind:
    if self in (StepRole.STABILIZE_EXTRACT, StepRole.STABILIZE_REPLENISH):
      return OperationKind.STABILIZE
    return OperationKind(self.value)


# Required finish order within a batch.
BATCH_ORDER = (
  StepRole.EXTRACT,
  StepRole.STABILIZE_EXTRACT,
  StepRole.REPLENISH,
  StepRole.STABILIZE_REPLENISH,
)


@dataclass(frozen=True)
class ScheduledStep:
  """One operation of a batch with its timing."""

  role: StepRole
  thread_count: int
  start_delay: float
  planned_finish_time: float
  duration: float

  @property
  def kind(self) -> OperationKind:
    return self.role.kind

  @property
  def start_time(self) -> float:
    return self.planned_finish_time - self.duration


def _threads_for(plan: BatchPlan, role: StepRole) -> int:
  return {
    StepRole.EXTRACT: plan.extract,
    StepRole.STABILIZE_EXTRACT: plan.stabilize_extract,
    StepRole.REPLENISH: plan.replenish,
    StepRole.STABILIZE_REPLENISH: plan.stabilize_replenish,
  }[role]


def build_schedule(
  plan: BatchPlan,
  durations: Mapping[OperationKind, float],
  gap: float,
  now: float,
  *,
  shift_padding: float = c.SHIFT_PADDING,
) -> List[ScheduledStep]:
  """
  Schedule ``plan`` so finishes land ``gap`` apart in :data:`BATCH_ORDER`.

  The last Stabilize step anchors the schedule at ``now + 4 * gap``; each
  earlier step finishes ``gap`` before the next.  If any start would fall in
  the past, every step is shifted forward by the same amount (plus
  ``shift_padding``), which keeps the relative gaps exact.
  """
  if gap < c.MIN_GAP:
    raise ValueError(f"gap must be at least {c.MIN_GAP} seconds")
  if shift_padding < 0:
    raise ValueError("shift_padding must be non-negative")

  count = len(BATCH_ORDER)
  step_durations = np.array([float(durations[role.kind]) for role in BATCH_ORDER], dtype=np.float64)
  if (step_durations < 0).any():
    raise ValueError("operation durations must be non-negative")

  anchor = now + count * gap
  finishes = anchor - gap * np.arange(count - 1, -1, -1, dtype=np.float64)
  delays = finishes - step_durations - now

  earliest = float(delays.min())
  if earliest < 0:
    shift = -earliest + shift_padding
    finishes = finishes + shift
    delays = delays + shift

  return [
    ScheduledStep(
      role=role,
      thread_count=_threads_for(plan, role),
      start_delay=float(max(0.0, delay)),
      planned_finish_time=float(finish),
      duration=float(duration),
    )
    for role, delay, finish, duration in zip(BATCH_ORDER, delays, finishes, step_durations)
  ]


def build_prep_schedule(
  stabilize_threads: int,
  replenish_threads: int,
  durations: Mapping[OperationKind, float],
  now: float,
) -> List[ScheduledStep]:
  """Two-operation schedule used while preparing: start now, no ordering."""
  steps: List[ScheduledStep] = []
  if replenish_threads > 0:
    duration = float(durations[OperationKind.REPLENISH])
    steps.append(
      ScheduledStep(
        role=StepRole.REPLENISH,
        thread_count=int(replenish_threads),
        start_delay=0.0,
        planned_finish_time=now + duration,
        duration=duration,
      )
    )
  if stabilize_threads > 0:
    duration = float(durations[OperationKind.STABILIZE])
    steps.append(
      ScheduledStep(
        role=StepRole.STABILIZE_REPLENISH,
        thread_count=int(stabilize_threads),
        start_delay=0.0,
        planned_finish_time=now + duration,
        duration=duration,
      )
    )
  return steps


def replicate_schedule(steps: Sequence[ScheduledStep], copies: int, spacing: float) -> List[ScheduledStep]:
  """
  Repeat a schedule ``copies`` times, each copy ``spacing`` later than the last.

  ``spacing`` must leave room for a whole batch of finishes, otherwise the
  copies interleave and the finish order breaks.
  """
  if copies < 1:
    raise ValueError("copies must be at least 1")
  if copies > 1 and spacing <= 0:
    raise ValueError("spacing must be positive when replicating")
  replicated: List[ScheduledStep] = []
  for index in range(copies):
    offset = index * spacing
    for step in steps:
      replicated.append(
        replace(
          step,
          start_delay=step.start_delay + offset,
          planned_finish_time=step.planned_finish_time + offset,
        )
      )
  return replicated


def last_finish(steps: Sequence[ScheduledStep]) -> float:
  if not steps:
    raise ValueError("empty schedule")
  return max(step.planned_finish_time for step in steps)


def schedule_frame(steps: Sequence[ScheduledStep]) -> pd.DataFrame:
  """Tabulate a schedule for log output."""
  return pd.DataFrame(
    {
      "role": [step.role.value for step in steps],
      "threads": [step.thread_count for step in steps],
      "delay_s": [round(step.start_delay, 3) for step in steps],
      "duration_s": [round(step.duration, 3) for step in steps],
      "finish": [round(step.planned_finish_time, 3) for step in steps],
    }
  )
