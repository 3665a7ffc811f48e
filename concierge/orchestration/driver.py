"""
Orchestration Driver — the scheduled pass that resumes unfinished work.

On a fixed interval the driver walks every owner with linked capability
credentials. For each owner it gathers what the assistant left open:

    - tasks still ``in_progress`` (there is a next step to take)
    - tasks ``waiting`` on something external
    - mail that arrived inside the lookback window (the events a waiting task
      may have been waiting for)

and renders them into one directive prompt. The prompt runs through the same
agentic turn as chat, at the lower orchestration temperature, with the full
tool set: the model can reply to the email, create the event, and then record
the outcome with ``update_task_context`` / ``update_task_status``.

After the tasks pass, the same events are checked against the owner's standing
instructions (see ``evaluator.py``), and the owner's task counts are written to
the log for audit.

Owners are independent. Up to ``max_concurrent_owners`` run at once, and an
owner that fails is logged and skipped; the pass itself never fails because
of one owner. There are no retries inside a pass: the next pass is the retry.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import structlog

from concierge.capabilities.base import CapabilityError
from concierge.capabilities.credentials import CredentialStore
from concierge.capabilities.mail import MailClient
from concierge.config import OrchestrationConfig
from concierge.events import EventBus, OrchestrationPassCompletedEvent
from concierge.orchestration.evaluator import InstructionEvaluator
from concierge.orchestration.prompts import ORCHESTRATOR_SYSTEM_PROMPT, render_orchestration_prompt
from concierge.tasks import TaskStatus, TaskStore

if TYPE_CHECKING:
    from concierge.agent import Assistant

logger = structlog.get_logger(__name__)


class OrchestrationDriver:
    def __init__(
        self,
        assistant: Assistant,
        tasks: TaskStore,
        credentials: CredentialStore,
        mail: Optional[MailClient] = None,
        evaluator: Optional[InstructionEvaluator] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[OrchestrationConfig] = None,
        temperature: float = 0.3,
    ):
        self._assistant = assistant
        self._tasks = tasks
        self._credentials = credentials
        self._mail = mail
        self._evaluator = evaluator
        self._event_bus = event_bus
        self._config = config or OrchestrationConfig()
        self._temperature = temperature

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._pass_count = 0
        self._last_pass_time: Optional[float] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic pass loop."""
        if self._running:
            logger.warning("orchestrator.already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("orchestrator.started", interval=self._config.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("orchestrator.stopped", total_passes=self._pass_count)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_pass()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("orchestrator.pass_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self._config.interval_seconds)

    # -------------------------------------------------------------------------
    # One pass
    # -------------------------------------------------------------------------

    async def run_pass(self) -> dict[str, bool]:
        """Run one pass over every linked owner; returns owner -> succeeded."""
        owners = self._credentials.list_owners()
        self._pass_count += 1
        self._last_pass_time = time.time()
        pass_start = time.monotonic()
        logger.info("orchestrator.pass_starting", owners=len(owners), pass_number=self._pass_count)

        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_owners))

        async def _bounded(owner: str) -> bool:
            async with semaphore:
                return await self._run_owner_guarded(owner)

        outcomes = await asyncio.gather(*(_bounded(owner) for owner in owners))
        results = dict(zip(owners, outcomes))

        logger.info(
            "orchestrator.pass_complete",
            owners=len(owners),
            failed=sum(1 for ok in outcomes if not ok),
            elapsed=round(time.monotonic() - pass_start, 3),
        )
        return results

    async def _run_owner_guarded(self, owner: str) -> bool:
        try:
            await self.run_owner(owner)
            return True
        except Exception as e:
            logger.error("orchestrator.owner_failed", owner=owner, error=str(e), exc_info=True)
            self._publish(
                OrchestrationPassCompletedEvent(
                    owner=owner,
                    succeeded=False,
                    active_tasks=0,
                    waiting_tasks=0,
                    new_events=0,
                    error=str(e),
                )
            )
            return False

    async def run_owner(self, owner: str) -> dict[str, Any]:
        """
        Run the resumption protocol for one owner.

        The tasks turn and the instruction evaluation are guarded separately:
        a failure in one does not skip the other. Afterwards the first error
        (provider failure, malformed response, iteration cap) is re-raised and
        ``run_pass`` records the owner as failed.
        """
        active = self._tasks.list_by_status(owner, TaskStatus.IN_PROGRESS)
        waiting = self._tasks.list_by_status(owner, TaskStatus.WAITING)
        now = datetime.now(timezone.utc)
        emails = await self.recent_events(owner, now)

        logger.info(
            "orchestrator.owner_starting",
            owner=owner,
            active_tasks=len(active),
            waiting_tasks=len(waiting),
            new_events=len(emails),
        )

        summary: dict[str, Any] = {
            "active_tasks": len(active),
            "waiting_tasks": len(waiting),
            "new_events": len(emails),
            "response": None,
        }

        failure: Optional[Exception] = None

        if active or waiting or emails:
            messages = [
                {"role": "system", "content": ORCHESTRATOR_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": render_orchestration_prompt(
                        now,
                        active,
                        waiting,
                        emails,
                        lookback_minutes=self._config.event_lookback_minutes,
                    ),
                },
            ]
            try:
                result = await self._assistant.run_agentic_turn(
                    owner, messages, temperature=self._temperature
                )
            except Exception as e:
                logger.error("orchestrator.tasks_turn_failed", owner=owner, error=str(e))
                failure = e
            else:
                summary["response"] = result.content
                summary["tool_calls"] = [call.name for call in result.tool_calls]
            self.log_task_statuses(owner)
        else:
            logger.debug("orchestrator.owner_idle", owner=owner)

        # Runs even when the tasks turn failed; a later pass will not see these events.
        if self._evaluator is not None and self._config.instructions_enabled:
            try:
                await self._evaluator.evaluate(owner, emails)
            except Exception as e:
                logger.error("orchestrator.evaluation_failed", owner=owner, error=str(e))
                failure = failure or e

        if failure is not None:
            raise failure

        self._publish(
            OrchestrationPassCompletedEvent(
                owner=owner,
                succeeded=True,
                active_tasks=len(active),
                waiting_tasks=len(waiting),
                new_events=len(emails),
            )
        )
        return summary

    async def recent_events(self, owner: str, now: datetime) -> list[dict[str, Any]]:
        """Mail received inside the lookback window; empty if mail is unavailable."""
        if self._mail is None:
            return []
        since = now - timedelta(minutes=self._config.event_lookback_minutes)
        try:
            return await self._mail.search(
                owner,
                query=f"after:{int(since.timestamp())}",
                limit=self._config.max_events_per_owner,
            )
        except CapabilityError as e:
            logger.warning(
                "orchestrator.events_unavailable", owner=owner, status=e.status, error=str(e)
            )
            return []

    def log_task_statuses(self, owner: str) -> dict[str, int]:
        """Audit trail: task counts per status and the tasks still open."""
        counts = self._tasks.count_by_status(owner)
        logger.info("orchestrator.task_counts", owner=owner, **counts)
        for task in self._tasks.list_tasks(owner):
            if task.status is not TaskStatus.COMPLETED:
                logger.info(
                    "orchestrator.task_open",
                    owner=owner,
                    task_id=task.task_id,
                    status=task.status.value,
                    description=task.description,
                    version=task.version,
                )
        return counts

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _publish(self, event: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event)

    @property
    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "passes": self._pass_count,
            "last_pass_time": self._last_pass_time,
            "interval_seconds": self._config.interval_seconds,
        }
