"""Error taxonomy for the fleet controller.

Store operations raise these; the reconciler is the one place that decides
whether a failure is retried, surfaced as a condition, or ignored because
the object is gone.
"""
from __future__ import annotations


class FleetError(Exception):
    """Base exception for fleet."""

    retryable = False


class NotFoundError(FleetError):
    """The object does not exist (or was replaced under the same name)."""


class AlreadyExistsError(FleetError):
    pass


class ValidationError(FleetError):
    """Malformed object: bad selector, negative replicas, missing name."""


class ConflictError(FleetError):
    """Optimistic-concurrency mismatch on resource_version."""

    retryable = True


class TransientError(FleetError):
    """The store is temporarily unavailable."""

    retryable = True


class AggregateError(FleetError):
    """Several independent per-unit failures from one pass."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        super().__init__("; ".join(f"{type(e).__name__}: {e}" for e in self.errors))

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return any(is_retryable(e) for e in self.errors)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, FleetError):
        return bool(exc.retryable)
    # Anything we did not classify is assumed to be an I/O hiccup.
    return True


def aggregate(errors: list[Exception]) -> Exception | None:
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return AggregateError(errors)
