from .client import AcmeClient, PollingPolicy
from .challenge_solver import ChallengeSolver, DNS01Solver, SolverManager
from .authorization import AuthorizationWorker, AuthorizationResult, Stage, schedule_workers
from .orchestrator import CertificateResource, OrderOrchestrator
from .exceptions import (
    AcmeClientException,
    AuthorizationError,
    CouldNotCompleteChallenge,
    ObtainError,
    ProviderError,
    RateLimited,
)

__all__ = [
    "AcmeClient",
    "AcmeClientException",
    "AuthorizationError",
    "AuthorizationResult",
    "AuthorizationWorker",
    "CertificateResource",
    "ChallengeSolver",
    "CouldNotCompleteChallenge",
    "DNS01Solver",
    "ObtainError",
    "OrderOrchestrator",
    "PollingPolicy",
    "ProviderError",
    "RateLimited",
    "SolverManager",
    "Stage",
    "schedule_workers",
]
