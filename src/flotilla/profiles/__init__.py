"""Role profile models and loader exports."""

from .loader import ProfileLoadError, ProfileLoader, load_profiles
from .models import DEFAULT_PROFILES, RoleProfile

__all__ = [
    "DEFAULT_PROFILES",
    "ProfileLoadError",
    "ProfileLoader",
    "RoleProfile",
    "load_profiles",
]
