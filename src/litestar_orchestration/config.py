"""Configuration for the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["EngineConfig"]


@dataclass
class EngineConfig:
    """Tuning options for the execution scheduler.

    Attributes:
        worker_count: Number of concurrent scheduler workers.
        max_steps_per_slice: Steps a worker runs for one instance before putting it
            back on the queue, so busy instances cannot starve others.
        max_activities_per_run: Activities an instance may run without external
            input before it is faulted with ``PotentialInfiniteLoop``.
        max_conflict_retries: Immediate retries of a step whose save hit a
            concurrency conflict.
        due_poll_interval: Seconds between polls of the store for due timers,
            retries and scheduled starts.

    Example:
        >>> from litestar_orchestration import EngineConfig, WorkflowEngine
        >>> engine = WorkflowEngine(config=EngineConfig(worker_count=8))
    """

    worker_count: int = 4
    max_steps_per_slice: int = 50
    max_activities_per_run: int = 1000
    max_conflict_retries: int = 3
    due_poll_interval: float = 1.0

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            msg = "worker_count must be at least 1"
            raise ValueError(msg)
        if self.max_steps_per_slice < 1:
            msg = "max_steps_per_slice must be at least 1"
            raise ValueError(msg)
        if self.max_conflict_retries < 0:
            msg = "max_conflict_retries cannot be negative"
            raise ValueError(msg)
