"""codecrew - a dependency-aware orchestrator for coding agents."""

__version__ = "0.1.0"

from codecrew.config import Config
from codecrew.coordinator import Coordinator, aggregate_results
from codecrew.planner import plan_execution

__all__ = ["Config", "Coordinator", "aggregate_results", "plan_execution", "__version__"]
