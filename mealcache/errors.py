"""
Error taxonomy for the recipe cache layer.
Callers tell "try again later" apart from "not found" by exception type.
"""

from typing import Optional


class RecipeCacheError(Exception):
    pass


class InvalidKeyError(RecipeCacheError):
    def __init__(self, value: object, reason: str = "Invalid recipe id"):
        super().__init__(f"{reason}: {value!r}")
        self.value = value
        self.reason = reason


class RemoteSourceError(RecipeCacheError):
    pass


class QuotaExceededError(RemoteSourceError):
    """Upstream daily/monthly quota exhausted. Never retried automatically."""

    def __init__(self, message: str = "Upstream API quota exceeded"):
        super().__init__(message)


class RateLimitedError(RemoteSourceError):
    def __init__(
        self,
        message: str = "Upstream API rate limit hit",
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.retry_after = retry_after


class RecipeNotFoundError(RemoteSourceError):
    def __init__(self, recipe_id: object):
        super().__init__(f"Recipe not found: {recipe_id}")
        self.recipe_id = recipe_id


class TransientNetworkError(RemoteSourceError):
    pass


class UpstreamResponseError(RemoteSourceError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreWriteError(RecipeCacheError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Store write failed during {operation}: {reason}")
        self.operation = operation
        self.reason = reason
