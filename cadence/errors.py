"""Configuration errors surfaced to the operator; everything else is retried."""

from __future__ import annotations


class InvalidTargetError(ValueError):
  """The target has no extractable maximum or yields nothing per thread."""

  def __init__(self, target_id: str, detail: str) -> None:
    super().__init__(f"{target_id!r} is not a usable target: {detail}")
    self.target_id = target_id


class EmptyPoolError(RuntimeError):
  """The worker pool stayed empty for too many consecutive polls."""
