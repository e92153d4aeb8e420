"""
E2E Controller module.

This module contains the container lifecycle manager, the emulator
orchestrators and the test-execution worker. The worker runs as its own
process (`python -m e2e_controller`) and shares the job store with the
admin CLI.
"""

from .compose import ComposeRuntime
from .context import EngineContext
from .lifecycle import LifecycleManager, order_services
from .orchestrator import BaseOrchestrator, create_orchestrator
from .worker import TestWorker

__all__ = [
    "BaseOrchestrator",
    "ComposeRuntime",
    "EngineContext",
    "LifecycleManager",
    "TestWorker",
    "create_orchestrator",
    "order_services",
]
