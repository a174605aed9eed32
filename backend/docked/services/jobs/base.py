"""Job handler contract for batch runs."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from docked.config import DEFAULT_INTERVAL_MINUTES
from docked.services.batch_logger import BatchLogger
from docked.services.db_queue import DatabaseOperationQueue
from docked.services.event_bus import EventBus

if TYPE_CHECKING:
    from docked.services.registry.manager import RegistryManager


@dataclass
class JobContext:
    """Everything a handler may use during one run."""

    run_id: int
    job_type: str
    is_manual: bool
    logger: BatchLogger
    registry: "RegistryManager"
    db_queue: DatabaseOperationQueue
    event_bus: Optional[EventBus] = None

    async def publish(self, event_type: str, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, run_id=self.run_id, job_type=self.job_type, **payload)


@dataclass
class JobResult:
    """Counts and outcome of one run.

    A result with error_message set still completes the run: it marks a
    run that stopped early (e.g. rate limited) but kept its partial counts.
    """

    checked_count: int = 0
    updated_count: int = 0
    error_message: Optional[str] = None
    partial: bool = False
    details: list[dict[str, Any]] = field(default_factory=list)


class JobHandler(ABC):
    """A batch job type.

    Handlers raise to fail the run; per-item failures are logged and
    recorded, never raised.
    """

    job_type: str = ""
    display_name: str = ""
    default_enabled: bool = True
    default_interval_minutes: int = DEFAULT_INTERVAL_MINUTES

    @abstractmethod
    async def execute(self, context: JobContext) -> JobResult:
        """Run the job to completion."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(job_type={self.job_type})>"
