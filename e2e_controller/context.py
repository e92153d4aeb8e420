"""
Engine context: the state shared by the prober, lifecycle manager and worker.

Holding it in one explicit object (instead of module-level variables) lets
tests build an isolated context with a fake clock.
"""

from dataclasses import dataclass, field

from e2e_common.models import ServiceStatus
from e2e_common.timing import Clock, SystemClock, TTLCache

from .config import LifecycleTimeouts


@dataclass
class EngineContext:
    """
    Clock, status cache and session state for one engine process.

    Attributes:
        clock: Time source for every wait loop
        status_cache: Short-lived cache of the last status probe
        starting_since: Service name -> monotonic time it was first seen in
            health "starting"
    """

    clock: Clock = field(default_factory=SystemClock)
    status_cache_ttl: float = LifecycleTimeouts.status_cache_ttl
    status_cache: TTLCache[dict[str, ServiceStatus]] = field(init=False)
    starting_since: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.status_cache = TTLCache(self.status_cache_ttl, self.clock)

    def starting_for(self, name: str) -> float:
        """Return how long the service has been seen "starting", recording first sight."""
        now = self.clock.monotonic()
        first_seen = self.starting_since.setdefault(name, now)
        return now - first_seen

    def clear_starting(self, name: str) -> None:
        self.starting_since.pop(name, None)
