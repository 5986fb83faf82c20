"""
Ray-backed execution for batch steps.

Each launch becomes a Ray task pinned to the chosen node.  The task sleeps
for its start delay and then runs the caller's operation callable, so the
coordinator never waits on it: admission of the task is all it observes.
Capacity is expressed in gigabytes of Ray ``memory`` to match
:func:`ray_worker_pool`.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

try:  # pragma: no cover - optional dependency
  import ray
  from ray.util.scheduling_strategies import NodeAffinitySchedulingStrategy
except Exception:  # pragma: no cover - fallback when Ray missing
  ray = None  # type: ignore
  NodeAffinitySchedulingStrategy = None  # type: ignore

from cadence.resources import OperationKind, WorkerNode, resolve_unit_costs

# Ray expects memory limits in bytes.
_GBYTES = 1e9

Operation = Callable[[OperationKind, str, int], Any]


def _require_ray() -> None:
  if ray is None:  # pragma: no cover - dependency guard
    raise ImportError("Ray is required for distributed execution; install ray to enable this path.")


def _initialise_ray(address: Optional[str], init_kwargs: Mapping[str, Any]) -> None:
  _require_ray()
  if ray.is_initialized():  # pragma: no cover - skip double init
    return
  ray.init(address=address, **dict(init_kwargs))


def _prepare_remote_options(
  node_id: str,
  threads: int,
  unit_cost_gb: float,
  extra_options: Mapping[str, Any],
) -> Dict[str, Any]:
  options: Dict[str, Any] = {
    "num_cpus": 0,
    "memory": max(1, int(threads * unit_cost_gb * _GBYTES)),
    "scheduling_strategy": NodeAffinitySchedulingStrategy(node_id=node_id, soft=False),
  }
  options.update(extra_options)
  return options


if ray is not None:  # pragma: no cover - skip when Ray missing

  @ray.remote
  def _run_operation_remote(
    operation: Operation,
    kind: str,
    target_id: str,
    threads: int,
    start_delay: float,
  ) -> Any:
    if start_delay > 0:
      time.sleep(start_delay)
    return operation(OperationKind(kind), target_id, threads)


def ray_worker_pool(ray_address: Optional[str] = None) -> List[WorkerNode]:
  """
  Enumerate live Ray nodes as worker nodes, capacity in gigabytes of memory.

  Initialises Ray against ``ray_address`` when it is not running yet.
  """
  _require_ray()
  if not ray.is_initialized() and ray_address is not None:
    ray.init(address=ray_address)  # type: ignore[call-arg]

  nodes: List[WorkerNode] = []
  for node in ray.nodes():
    if not node.get("Alive", False):
      continue
    resources = node.get("Resources", {})
    available = node.get("AvailableResources", resources)

    total_gb = float(resources.get("memory", 0.0)) / _GBYTES
    if total_gb <= 0:
      continue
    available_gb = float(available.get("memory", resources.get("memory", 0.0))) / _GBYTES

    nodes.append(
      WorkerNode(
        node_id=str(node.get("NodeID", node.get("NodeManagerAddress", ""))),
        total_capacity=total_gb,
        used_capacity=max(0.0, total_gb - available_gb),
      )
    )
  return nodes


class RayLauncher:
  """
  Launcher that submits each step as a node-pinned Ray task.

  References to submitted tasks are kept in ``pending`` until they finish;
  every launch first drops the ones that already have.

  Parameters
  ----------
  operation:
      Callable executed remotely as ``operation(kind, target_id, threads)``
      once the start delay has elapsed.
  unit_costs:
      Per-kind gigabytes reserved per thread; must match the dispatcher's.
  ray_address / ray_init_kwargs:
      Passed to ``ray.init`` when Ray is not initialised yet.
  ray_remote_options:
      Extra ``.options(...)`` applied to every task.
  """

  def __init__(
    self,
    operation: Operation,
    unit_costs: Optional[Mapping[OperationKind, float]] = None,
    *,
    ray_address: Optional[str] = None,
    ray_init_kwargs: Optional[Mapping[str, Any]] = None,
    ray_remote_options: Optional[Mapping[str, Any]] = None,
  ) -> None:
    _initialise_ray(ray_address, dict(ray_init_kwargs or {}))
    self._operation = operation
    self._unit_costs = resolve_unit_costs(unit_costs)
    self._remote_options = dict(ray_remote_options or {})
    self.pending: List[Any] = []

  def launch(
    self,
    kind: OperationKind,
    node_id: str,
    threads: int,
    target_id: str,
    start_delay: float,
  ) -> bool:
    self.reap()
    options = _prepare_remote_options(node_id, threads, self._unit_costs[kind], self._remote_options)
    try:
      ref = _run_operation_remote.options(**options).remote(  # type: ignore[attr-defined]
        self._operation, OperationKind(kind).value, target_id, int(threads), float(start_delay)
      )
    except (ray.exceptions.RayError, ValueError, TypeError):
      return False
    self.pending.append(ref)
    return True

  def reap(self) -> int:
    """Drop references to finished tasks and return how many are still running."""
    if not self.pending:
      return 0
    _, running = ray.wait(self.pending, num_returns=len(self.pending), timeout=0)
    self.pending = list(running)
    return len(self.pending)
