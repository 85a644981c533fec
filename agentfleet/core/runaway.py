"""
Runaway task monitor
Watches budgeted agent executions and signals kill/pause on runaway behavior
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from agentfleet.config import settings
from agentfleet.models.task import RecordedAction, TaskStats, WatchdogAction, WatchdogDecision
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.cache import FleetCache
from agentfleet.utils.clock import Clock, utcnow
from agentfleet.utils.metrics import record_watchdog_decision, update_monitored_tasks

logger = logging.getLogger(__name__)

DecisionCallback = Callable[[WatchdogDecision], Awaitable[None]]

_AUDIT_KINDS = {
    WatchdogAction.KILL: "loop_killed",
    WatchdogAction.PAUSE: "loop_paused",
}


class RunawayTaskMonitor:
    """
    Per-task watchdogs.

    Task state (start time, tokens, recorded actions) lives in Redis so any
    instance can record into it; the watchdog timer is local to the instance
    that started monitoring. A decision is a signal only: the executor that
    owns the task is responsible for terminating or pausing it.
    """

    def __init__(
        self,
        cache: FleetCache,
        tenants: TenantRepository,
        check_interval: float = settings.TASK_CHECK_INTERVAL_SECONDS,
        max_runtime: float = settings.TASK_MAX_RUNTIME_SECONDS,
        loop_window: int = settings.TASK_LOOP_WINDOW,
        token_soft_cap: int = settings.TASK_TOKEN_SOFT_CAP,
        state_ttl: int = settings.TASK_STATE_TTL_SECONDS,
        timer: Callable[[], float] = time.time,
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.tenants = tenants
        self.check_interval = check_interval
        self.max_runtime = max_runtime
        self.loop_window = loop_window
        self.token_soft_cap = token_soft_cap
        self.state_ttl = state_ttl
        self.timer = timer
        self.clock = clock

        # (tenant_id, task_id) -> watchdog task
        self._watchdogs: Dict[Tuple[str, str], asyncio.Task] = {}

    async def start_task_monitor(
        self,
        tenant_id: str,
        task_id: str,
        on_decision: Optional[DecisionCallback] = None,
    ) -> None:
        key = (tenant_id, task_id)
        self._cancel_watchdog(key)
        await self.cache.init_task(tenant_id, task_id, self.timer(), self.state_ttl)
        self._watchdogs[key] = asyncio.create_task(self._watch(tenant_id, task_id, on_decision))
        update_monitored_tasks(len(self._watchdogs))
        logger.debug(f"[watchdog] monitoring {tenant_id}/{task_id}")

    async def record_action(self, tenant_id: str, task_id: str, action_type: str) -> None:
        action = RecordedAction(type=action_type, timestamp=self.timer())
        await self.cache.push_task_action(tenant_id, task_id, action, self.state_ttl)

    async def add_tokens(self, tenant_id: str, task_id: str, tokens: int) -> int:
        return await self.cache.add_task_tokens(tenant_id, task_id, tokens, self.state_ttl)

    async def get_stats(self, tenant_id: str, task_id: str) -> Optional[TaskStats]:
        state = await self.cache.load_task(tenant_id, task_id)
        if state is None:
            return None
        start_time, tokens, actions = state
        return TaskStats(
            tenant_id=tenant_id,
            task_id=task_id,
            start_time=start_time,
            tokens_used=tokens,
            actions=actions,
        )

    def evaluate(self, stats: TaskStats) -> Optional[WatchdogDecision]:
        """First matching rule wins: runtime, repeated action, token spike"""
        runtime = self.timer() - stats.start_time
        if runtime > self.max_runtime:
            return self._decision(stats, WatchdogAction.KILL, f"Task stopped after {self.max_runtime:.0f}s")

        recent = stats.actions[-self.loop_window:]
        if len(recent) >= self.loop_window and len({a.type for a in recent}) == 1:
            return self._decision(stats, WatchdogAction.KILL, "Agent loop detected: repeating the same action")

        if stats.tokens_used > self.token_soft_cap:
            return self._decision(stats, WatchdogAction.PAUSE, f"Task used {stats.tokens_used:,} tokens")
        return None

    def _decision(self, stats: TaskStats, action: WatchdogAction, reason: str) -> WatchdogDecision:
        return WatchdogDecision(
            tenant_id=stats.tenant_id,
            task_id=stats.task_id,
            action=action,
            reason=reason,
            decided_at=self.clock(),
        )

    async def check(self, tenant_id: str, task_id: str) -> Optional[WatchdogDecision]:
        """One evaluation of a task without acting on it"""
        stats = await self.get_stats(tenant_id, task_id)
        if stats is None:
            return None
        return self.evaluate(stats)

    async def _watch(self, tenant_id: str, task_id: str, on_decision: Optional[DecisionCallback]) -> None:
        key = (tenant_id, task_id)
        try:
            while True:
                await asyncio.sleep(self.check_interval)
                try:
                    stats = await self.get_stats(tenant_id, task_id)
                    if stats is None:
                        logger.debug(f"[watchdog] state for {tenant_id}/{task_id} is gone, stopping")
                        return
                    decision = self.evaluate(stats)
                    if decision is not None:
                        await self._act(decision, on_decision)
                        return
                except Exception:
                    logger.exception(f"[watchdog] check failed for {tenant_id}/{task_id}")
        finally:
            if self._watchdogs.get(key) is asyncio.current_task():
                del self._watchdogs[key]
                update_monitored_tasks(len(self._watchdogs))

    async def _act(self, decision: WatchdogDecision, on_decision: Optional[DecisionCallback]) -> None:
        await self.tenants.record_activity(
            decision.tenant_id,
            _AUDIT_KINDS[decision.action],
            decision.reason,
            {"task_id": decision.task_id},
        )
        record_watchdog_decision(decision.action.value)
        logger.warning(
            f"[watchdog] {decision.action.value} {decision.tenant_id}/{decision.task_id}: {decision.reason}"
        )
        if on_decision is not None:
            try:
                await on_decision(decision)
            except Exception:
                logger.exception(f"[watchdog] decision callback failed for {decision.tenant_id}/{decision.task_id}")

    def _cancel_watchdog(self, key: Tuple[str, str]) -> None:
        task = self._watchdogs.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
        update_monitored_tasks(len(self._watchdogs))

    @property
    def monitored_count(self) -> int:
        return len(self._watchdogs)

    def is_monitoring(self, tenant_id: str, task_id: str) -> bool:
        task = self._watchdogs.get((tenant_id, task_id))
        return task is not None and not task.done()

    async def stop_task_monitor(self, tenant_id: str, task_id: str) -> None:
        """Stop the watchdog and discard the task's state"""
        self._cancel_watchdog((tenant_id, task_id))
        await self.cache.clear_task(tenant_id, task_id)

    async def stop_all(self) -> None:
        tasks = list(self._watchdogs.values())
        self._watchdogs.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        update_monitored_tasks(0)
