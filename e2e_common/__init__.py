"""
E2E Common module.

This module contains shared domain models, storage interfaces, exceptions and
timing primitives used across the engine components (controller, persistence,
admin CLI).

The common module has no dependencies on other e2e_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .models import Job, JobPayload, ServiceStatus, TestResult
from .repository import ApplicationProvider, JobRepository, ResultSink

__all__ = [
    "Job",
    "JobPayload",
    "ServiceStatus",
    "TestResult",
    "JobRepository",
    "ResultSink",
    "ApplicationProvider",
]
