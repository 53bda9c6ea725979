"""Run orchestration."""

from .backfill import BackfillRunner, RunAccumulator, RunState, infer_set_display_name, run_backfill

__all__ = ["BackfillRunner", "RunAccumulator", "RunState", "infer_set_display_name", "run_backfill"]
