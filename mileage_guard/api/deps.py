"""FastAPI dependencies: the process-wide runtime and its services."""

from __future__ import annotations

from typing import Optional

from mileage_guard.admin import AdminService
from mileage_guard.pipeline import IngestionService
from mileage_guard.runtime import Runtime, build_runtime

_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Return the shared runtime, building it from the environment on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Install (or with ``None``, reset) the shared runtime."""
    global _runtime
    _runtime = runtime


def get_service() -> IngestionService:
    return get_runtime().service


def get_admin() -> AdminService:
    return get_runtime().admin
