from .notifier import ExitNotifier, ExitReason
from .readiness import Immediate, MarkerFile, Readiness, ReadinessPolicy
from .runner import ExitStatus, Intent, ManagedProcess, Unit, UnitState
from .session import SessionState, SupervisionSession
from .supervisor import SessionOutcome, Supervisor

__all__ = [
    "ExitNotifier",
    "ExitReason",
    "ExitStatus",
    "Immediate",
    "Intent",
    "ManagedProcess",
    "MarkerFile",
    "Readiness",
    "ReadinessPolicy",
    "SessionOutcome",
    "SessionState",
    "Supervisor",
    "SupervisionSession",
    "Unit",
    "UnitState",
]
