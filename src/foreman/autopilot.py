from __future__ import annotations

import asyncio
import logging

from foreman.agents import Roster
from foreman.config import AutopilotConfig
from foreman.driver import WorkflowDriver
from foreman.errors import EngineBusyError
from foreman.events import EventBus, EventKind
from foreman.roadmap import PhaseStatus, RoadmapPhase, RoadmapStore
from foreman.tasks import TaskStatus

logger = logging.getLogger(__name__)


class AutopilotLoop:
    """Works through the roadmap one task at a time while engaged and idle."""

    def __init__(
        self,
        driver: WorkflowDriver,
        roadmap: RoadmapStore,
        *,
        events: EventBus | None = None,
        config: AutopilotConfig | None = None,
    ) -> None:
        self.driver = driver
        self.roadmap = roadmap
        self.events = events or driver.events
        self.config = config or driver.config.autopilot
        self._engaged = False
        self.runs_started = 0

    @property
    def engaged(self) -> bool:
        return self._engaged

    def engage(self) -> None:
        if self._engaged:
            return
        self._engaged = True
        logger.info("Autopilot engaged")
        self.events.publish(EventKind.AUTOPILOT_ENGAGED)

    def disengage(self, reason: str = "requested") -> None:
        if not self._engaged:
            return
        self._engaged = False
        logger.info("Autopilot disengaged: %s", reason)
        self.events.publish(EventKind.AUTOPILOT_DISENGAGED, reason=reason)

    def _next_phase(self) -> RoadmapPhase | None:
        for phase in self.roadmap.phases:
            if phase.status in {PhaseStatus.ACTIVE, PhaseStatus.PENDING}:
                return phase
        return None

    async def tick(self) -> str | None:
        """Advance the roadmap by one step. Returns the id of the run it drove, if any."""
        if not self._engaged or self.driver.is_busy:
            return None

        phase = self._next_phase()
        if phase is None:
            self.disengage("roadmap complete")
            self.events.publish(EventKind.AUTOPILOT_FINISHED, runs=self.runs_started)
            return None
        if phase.status is PhaseStatus.PENDING:
            self.roadmap.set_phase_status(phase.id, PhaseStatus.ACTIVE)

        item = phase.first_undone()
        if item is None:
            self.roadmap.set_phase_status(phase.id, PhaseStatus.COMPLETED)
            return None

        if self.config.settle_seconds > 0:
            await asyncio.sleep(self.config.settle_seconds)
        if not self._engaged:
            return None
        manager = Roster.from_agents(self.driver.config.agents).manager
        try:
            run_id = self.driver.start(item.text, agent=manager)
        except EngineBusyError:
            return None
        self.runs_started += 1
        logger.info("Autopilot started %s for %s / %s", run_id, phase.title, item.text)

        task = await self.driver.wait(run_id)
        if task.status is TaskStatus.CANCELLED:
            self.disengage("run cancelled")
            return run_id
        self.roadmap.mark_task_done(phase.id, item.id)
        return run_id

    async def run(self) -> int:
        """Engage and keep ticking until disengaged. Returns the number of runs started."""
        self.engage()
        while self._engaged:
            if self.driver.is_busy:
                await asyncio.sleep(self.config.poll_seconds)
                continue
            await self.tick()
        return self.runs_started
