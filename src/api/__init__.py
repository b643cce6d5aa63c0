"""API clients for the Target Store."""
from .auth import TargetStoreAuth, AuthRequired
from .targets import TargetStoreClient, TargetStoreAPIError, NetworkFailure

__all__ = ["TargetStoreAuth", "AuthRequired", "TargetStoreClient", "TargetStoreAPIError", "NetworkFailure"]
