from specstudio.state.diff import DiffProvider, DiffResult, GitDiffProvider
from specstudio.state.plan_store import PlanStore

__all__ = ["DiffProvider", "DiffResult", "GitDiffProvider", "PlanStore"]
