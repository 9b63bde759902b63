"""
SLA Module

``SlaClock`` is the pure deadline arithmetic. ``SlaScheduler`` periodically
re-evaluates ACTIVE instances and persists status upgrades.

Paused time is excluded from elapsed time, so it pushes the deadline out:

    due_date = stage_entered_at + sla_hours + paused_seconds
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

from .errors import WorkflowError
from .events import WorkflowEvent, EventPublisher, create_instance_event
from .models import SlaConfig, SlaStatus, WorkflowInstance, WorkflowTemplate, InstanceStatus
from .tenancy import organization_context


logger = logging.getLogger("cwf.sla")


class SlaClock:
    """Deadline and status computation; holds defaults only"""

    def __init__(self, warning_threshold_pct: float = 0.8, critical_threshold_hours: float = 24.0):
        self.defaults = SlaConfig(warning_threshold_pct, critical_threshold_hours)

    @staticmethod
    def initial_due_date(entry_time: datetime, sla_hours: float, paused_seconds: float = 0.0) -> datetime:
        return entry_time + timedelta(hours=sla_hours, seconds=paused_seconds)

    def evaluate(self, entry_time: datetime, sla_hours: float, paused_seconds: float,
                 now: datetime, sla_config: Optional[SlaConfig] = None) -> SlaStatus:
        """Status at ``now``; severity never decreases as ``now`` grows"""
        config = sla_config or self.defaults
        due_date = self.initial_due_date(entry_time, sla_hours, paused_seconds)

        if now >= due_date:
            overdue_hours = (now - due_date).total_seconds() / 3600
            if overdue_hours >= config.critical_threshold_hours:
                return SlaStatus.CRITICAL
            return SlaStatus.OVERDUE

        elapsed = (now - entry_time).total_seconds() - paused_seconds
        if elapsed / (sla_hours * 3600) >= config.warning_threshold_pct:
            return SlaStatus.WARNING
        return SlaStatus.ON_TRACK

    def evaluate_instance(self, instance: WorkflowInstance, template: WorkflowTemplate,
                          now: datetime) -> SlaStatus:
        """Status of an instance's current stage, counting an in-progress pause"""
        paused = instance.stage_paused_seconds
        if instance.status == InstanceStatus.PAUSED and instance.paused_at:
            paused += (now - instance.paused_at).total_seconds()
        return self.evaluate(
            instance.stage_entered_at,
            template.stage_sla_hours(instance.current_stage),
            paused,
            now,
            template.sla_config
        )


class SlaScheduler:
    """
    Periodic sweep over ACTIVE instances.

    Only upward status moves are persisted. ``sla_breached_at`` is set on
    the first move into OVERDUE or CRITICAL and never changed afterwards.
    Every upgrade emits ``instance.sla_escalated``. The sweep is safe to run
    concurrently with user mutations: a lost compare-and-swap is counted as
    a failure and picked up on the next run.
    """

    def __init__(self, instances, templates, sla_clock: SlaClock, publisher: EventPublisher,
                 clock, interval_seconds: int = 300):
        self.instances = instances
        self.templates = templates
        self.sla_clock = sla_clock
        self.publisher = publisher
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()

    def check_instance(self, instance_id: str) -> Dict[str, Any]:
        """Compute one instance's status without persisting"""
        instance = self.instances.get(instance_id)
        template = self.templates.resolve_for_instance(instance.template_id, instance.template_version)
        computed = self.sla_clock.evaluate_instance(instance, template, self.clock.now())
        return {
            'instance_id': instance.id,
            'persisted': instance.sla_status.value,
            'computed': computed.value,
            'due_date': instance.due_date.isoformat(),
            'would_escalate': computed.severity > instance.sla_status.severity
        }

    def run_once(self, organization_id: Optional[str] = None) -> Dict[str, int]:
        """Sweep ACTIVE instances once; returns {checked, escalated, breached, failed}"""
        summary = {'checked': 0, 'escalated': 0, 'breached': 0, 'failed': 0}
        now = self.clock.now()
        template_cache: Dict[tuple, WorkflowTemplate] = {}

        for instance in self.instances.list_active_for_sweep(organization_id):
            summary['checked'] += 1
            with organization_context(instance.organization_id):
                try:
                    key = (instance.template_id, instance.template_version)
                    if key not in template_cache:
                        template_cache[key] = self.templates.resolve_for_instance(*key)
                    result = self._escalate(instance, template_cache[key], now)
                except WorkflowError as e:
                    summary['failed'] += 1
                    logger.warning(f"SLA check failed for instance {instance.id}: {e.code} {e.message}")
                    continue
                except Exception as e:
                    summary['failed'] += 1
                    logger.error(f"SLA check failed for instance {instance.id}: {e}", exc_info=True)
                    continue

            if result:
                summary['escalated'] += 1
                if result == 'breached':
                    summary['breached'] += 1

        logger.info(
            f"SLA sweep complete: checked={summary['checked']} escalated={summary['escalated']} "
            f"breached={summary['breached']} failed={summary['failed']}"
        )
        return summary

    def _escalate(self, instance: WorkflowInstance, template: WorkflowTemplate, now: datetime) -> Optional[str]:
        computed = self.sla_clock.evaluate_instance(instance, template, now)
        if computed.severity <= instance.sla_status.severity:
            return None

        previous = instance.sla_status
        newly_breached = computed.is_breach and instance.sla_breached_at is None
        if newly_breached:
            instance.sla_breached_at = now
        instance.sla_status = computed

        updated = self.instances.save_system_update(instance)

        self.instances.emit(create_instance_event(
            WorkflowEvent.INSTANCE_SLA_ESCALATED, updated, actor_id="system", timestamp=now,
            **{'from': previous.value, 'to': computed.value}
        ))
        return 'breached' if newly_breached else 'escalated'

    def start(self) -> None:
        """Start the sweep loop on a daemon thread"""
        if self.running:
            return
        self.running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, name="cwf-sla-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"SLA scheduler started (interval={self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self.running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("SLA scheduler stopped")

    def _loop(self) -> None:
        while self.running:
            started = time.monotonic()
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"SLA sweep aborted: {e}", exc_info=True)
            remaining = self.interval_seconds - (time.monotonic() - started)
            if remaining > 0:
                self._wake.wait(remaining)
