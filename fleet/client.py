"""Interfaces the controller core depends on.

``fleet.db.Store`` implements both; tests and embedders may substitute any
object with the same methods.
"""
from __future__ import annotations

from typing import Any, Protocol

from .models import LabelSelector


class Client(Protocol):
    def get(self, kind: str, namespace: str, name: str) -> Any: ...

    def list(self, kind: str, namespace: str | None = None, selector: LabelSelector | None = None) -> list[Any]: ...

    def create(self, obj: Any) -> Any: ...

    def delete(self, obj: Any, uid: str | None = None) -> None: ...

    def patch(self, obj: Any, diff: dict[str, Any]) -> Any: ...

    def update_status(self, obj: Any) -> Any: ...


class EventRecorder(Protocol):
    def log_event(
        self, level: str, message: str, namespace: str | None = None, set_name: str | None = None
    ) -> None: ...


class NullRecorder:
    def log_event(self, level: str, message: str, namespace: str | None = None, set_name: str | None = None) -> None:
        return None
