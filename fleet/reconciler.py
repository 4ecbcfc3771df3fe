from __future__ import annotations

from dataclasses import dataclass

from .client import Client, EventRecorder, NullRecorder
from .errors import FleetError, NotFoundError, ValidationError, is_retryable
from .models import DELETE_POLICIES, SET_KIND, Condition, SetKey, UnitSet, UnitSetStatus
from .scaling import ConvergeResult, ScalingEngine
from .selectors import matches, validate_selector
from .settings import settings
from .status import REPLICA_FAILURE, SPEC_VALID, compute_status, set_condition, write_status


@dataclass(frozen=True)
class Result:
    """What the caller's work queue should do with the key next."""

    requeue: bool = False
    requeue_after: float | None = None
    error: Exception | None = None


def validate_set(unit_set: UnitSet) -> None:
    spec = unit_set.spec
    if spec.replicas is not None and spec.replicas < 0:
        raise ValidationError(f"replicas must be >= 0, got {spec.replicas}")
    if spec.replicas is not None and spec.replicas > settings.max_replicas:
        raise ValidationError(f"replicas must be <= {settings.max_replicas}, got {spec.replicas}")
    if spec.min_ready_seconds < 0:
        raise ValidationError("min_ready_seconds must be >= 0")
    if spec.delete_policy and spec.delete_policy not in DELETE_POLICIES:
        raise ValidationError(f"delete_policy must be one of {', '.join(DELETE_POLICIES)}")
    validate_selector(spec.selector)
    if not matches(spec.selector, spec.template.metadata.labels):
        raise ValidationError("selector does not match the template labels; created units would never be counted")


class Reconciler:
    """Runs one reconcile cycle for a set.

    Nothing is kept between cycles: every decision is re-derived from what
    the store returns, so the same key may be delivered any number of times.
    """

    def __init__(
        self,
        client: Client,
        recorder: EventRecorder | None = None,
        engine: ScalingEngine | None = None,
        status_retries: int | None = None,
    ):
        self.client = client
        self.recorder = recorder or NullRecorder()
        self.engine = engine or ScalingEngine(client, self.recorder)
        self.status_retries = settings.status_update_retries if status_retries is None else status_retries

    def _log(self, level: str, key: SetKey, message: str) -> None:
        self.recorder.log_event(level, message, namespace=key.namespace, set_name=key.name)

    def reconcile(self, key: SetKey) -> Result:
        try:
            return self._reconcile(key)
        except FleetError as e:
            self._log("ERROR", key, f"Reconcile failed: {type(e).__name__}: {e}")
            if is_retryable(e):
                return Result(requeue=True, error=e)
            return Result(error=e)

    def _reconcile(self, key: SetKey) -> Result:
        try:
            unit_set = self.client.get(SET_KIND, key.namespace, key.name)
        except NotFoundError:
            return Result()

        if unit_set.metadata.deletion_timestamp is not None:
            # Owned units go away through the owner cascade.
            return Result()

        try:
            validate_set(unit_set)
        except ValidationError as e:
            self._log("WARN", key, f"Invalid spec: {e}")
            status = unit_set.status.model_copy(deep=True)
            status.observed_generation = unit_set.metadata.generation
            status.conditions = set_condition(
                status.conditions,
                Condition(type=SPEC_VALID, status="False", reason="InvalidSpec", message=str(e)),
            )
            self._write_status(unit_set, status)
            # A spec change or the periodic resync brings it back.
            return Result(error=e)

        converged = self.engine.converge(unit_set)
        status = compute_status(self.client, unit_set, converged.active)
        status.conditions = set_condition(status.conditions, Condition(type=SPEC_VALID, status="True"))
        status.conditions = set_condition(status.conditions, _replica_failure(converged))
        if not self._write_status(unit_set, status):
            return Result()

        err = converged.error
        if err is not None:
            if is_retryable(err):
                return Result(requeue=True, error=err)
            return Result(error=err)

        min_ready = unit_set.spec.min_ready_seconds
        if min_ready > 0 and status.ready_replicas > status.available_replicas:
            return Result(requeue_after=float(min_ready))
        return Result()

    def _write_status(self, unit_set: UnitSet, status: UnitSetStatus) -> bool:
        """Returns False when the set disappeared before the write."""
        try:
            write_status(self.client, unit_set, status, retries=self.status_retries)
        except NotFoundError:
            return False
        return True


def _replica_failure(converged: ConvergeResult) -> Condition:
    err = converged.error
    if err is None:
        return Condition(type=REPLICA_FAILURE, status="False")
    reason = "ScalingFailed" if converged.scaled else "AdoptionFailed"
    return Condition(type=REPLICA_FAILURE, status="True", reason=reason, message=str(err))
