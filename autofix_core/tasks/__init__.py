"""Task-level entry points (configuration, engine wiring, runner)."""

from .config import MAX_TASK_ITERATIONS, TaskConfig
from .task_runner import build_engine, run_autofix

__all__ = ["MAX_TASK_ITERATIONS", "TaskConfig", "build_engine", "run_autofix"]
