from .base import (
    Capabilities,
    ChallengeInfo,
    Provider,
    RecordRegistry,
    SequentialPolicy,
    TimeoutPolicy,
    challenge_fqdn,
    challenge_value,
)
from .registry import ProviderRegistry, default_registry

__all__ = [
    "Capabilities",
    "ChallengeInfo",
    "Provider",
    "ProviderRegistry",
    "RecordRegistry",
    "SequentialPolicy",
    "TimeoutPolicy",
    "challenge_fqdn",
    "challenge_value",
    "default_registry",
]
