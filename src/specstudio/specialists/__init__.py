from specstudio.specialists.base import SpecialistAgent, SpecialistResponse
from specstudio.specialists.coder import CoderAgent
from specstudio.specialists.planner import PlannerAgent
from specstudio.specialists.reviewer import QualityGateReviewer, parse_verdict

__all__ = [
    "CoderAgent",
    "PlannerAgent",
    "QualityGateReviewer",
    "SpecialistAgent",
    "SpecialistResponse",
    "parse_verdict",
]
