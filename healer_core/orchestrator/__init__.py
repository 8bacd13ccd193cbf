from .flapping import FlappingGuard
from .service import Orchestrator
from .transitions import LEGAL_TRANSITIONS, check_transition
from .worker import IncidentWorker

__all__ = ["FlappingGuard", "IncidentWorker", "LEGAL_TRANSITIONS", "Orchestrator", "check_transition"]
