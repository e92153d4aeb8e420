"""
E2E Persistence module.

This module contains the database implementation of the job queue, the
result sink and the application provider. Currently supports SQLite.

The persistence layer depends on e2e_common for domain models and interfaces,
and is used by both the worker (e2e_controller) and the admin CLI.
"""

from .sqlite_repository import SQLiteJobRepository

__all__ = ["SQLiteJobRepository"]
