"""
Timed batch scheduling for a decaying, replenishing resource.

The objects exported here size Extract/Stabilize/Replenish/Stabilize batches,
time them so they finish in order with a fixed gap, place them on a pool of
capacity-limited worker nodes, and run the whole cycle forever.  Ray-backed
launching lives in :mod:`cadence.ray_launcher` so Ray stays optional.
"""

from __future__ import annotations

from .resources import (
  OperationKind,
  TargetResource,
  WorkerNode,
  detect_local_node,
  resolve_unit_costs,
  slot_capacity,
  threads_within,
  total_free_capacity,
)
from .oracle import Launcher, PoolSource, ResourceOracle, ResourceState
from .plan import BatchPlan, PlanPolicy, compute_plan, minimal_batch_cost
from .schedule import (
  BATCH_ORDER,
  ScheduledStep,
  StepRole,
  build_prep_schedule,
  build_schedule,
  last_finish,
  replicate_schedule,
  schedule_frame,
)
from .dispatch import (
  Allocation,
  AllocationError,
  DispatchResult,
  Dispatcher,
  LaunchRecord,
  Placement,
  allocate_steps,
  allocation_frame,
)
from .errors import EmptyPoolError, InvalidTargetError
from .prep import Preparer, is_prepped
from .controller import BatchController, ControllerState

__all__ = [
  "OperationKind",
  "TargetResource",
  "WorkerNode",
  "detect_local_node",
  "resolve_unit_costs",
  "slot_capacity",
  "threads_within",
  "total_free_capacity",
  "Launcher",
  "PoolSource",
  "ResourceOracle",
  "ResourceState",
  "BatchPlan",
  "PlanPolicy",
  "compute_plan",
  "minimal_batch_cost",
  "BATCH_ORDER",
  "ScheduledStep",
  "StepRole",
  "build_prep_schedule",
  "build_schedule",
  "last_finish",
  "replicate_schedule",
  "schedule_frame",
  "Allocation",
  "AllocationError",
  "DispatchResult",
  "Dispatcher",
  "LaunchRecord",
  "Placement",
  "allocate_steps",
  "allocation_frame",
  "EmptyPoolError",
  "InvalidTargetError",
  "Preparer",
  "is_prepped",
  "BatchController",
  "ControllerState",
]
