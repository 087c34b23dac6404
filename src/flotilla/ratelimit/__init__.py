"""Rate-limit detection, credential rotation and failover."""

from .credentials import Credential, CredentialLoadError, CredentialPool, load_credentials
from .detector import DEFAULT_PATTERNS, RateLimitDetector, RateLimitWatcher
from .failover import FailoverDecision, FailoverPolicy

__all__ = [
    "Credential",
    "CredentialLoadError",
    "CredentialPool",
    "DEFAULT_PATTERNS",
    "FailoverDecision",
    "FailoverPolicy",
    "RateLimitDetector",
    "RateLimitWatcher",
    "load_credentials",
]
