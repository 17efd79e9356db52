"""
Workflow trigger engine.

``emit`` validates an event, records it, runs every matching active trigger
and then the in-code listeners. Each action runs in its own savepoint so one
failing action never undoes another, and never fails the caller.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from django.db import IntegrityError, transaction

from billing.validation import APIError

from .actions import ActionContext, get_handler
from .conditions import evaluate
from .events import BaseEvent, build_event, entity_type_for

logger = logging.getLogger(__name__)

Listener = Callable[[str, BaseEvent], None]


@dataclass
class ActionOutcome:
    trigger_id: int
    action_index: Optional[int]
    action_type: str
    result: str
    detail: Dict[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass
class EmitResult:
    event_log_id: int
    event_type: str
    matched: int = 0
    fired: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[ActionOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WorkflowEngine:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event_type: str, listener: Listener):
        listeners = self._listeners.setdefault(str(event_type), [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, event_type: str, listener: Listener):
        listeners = self._listeners.get(str(event_type), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event_type: str, data: Dict[str, Any], triggered_by: str = "system") -> EmitResult:
        event = build_event(event_type, data)
        return self.dispatch(str(event_type), event, triggered_by)

    def dispatch(self, event_type: str, event: BaseEvent, triggered_by: str = "system") -> EmitResult:
        from billing.models import WorkflowEventLog, WorkflowTrigger

        event_log = WorkflowEventLog.objects.create(
            event_type=event_type,
            entity_type=entity_type_for(event_type),
            entity_id=event.source_entity_id,
            payload=event.to_dict(),
            triggered_by=triggered_by,
        )
        result = EmitResult(event_log_id=event_log.id, event_type=event_type)

        triggers = WorkflowTrigger.objects.filter(event_type=event_type, is_active=True).order_by("-priority", "id")
        for trigger in triggers:
            self._run_trigger(trigger, event_type, event, event_log, result)

        self._notify_listeners(event_type, event)

        logger.info(
            f"Event {event_type} #{event.source_entity_id}: matched={result.matched} fired={result.fired} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result

    def dispatch_safely(self, event_type: str, event: BaseEvent, triggered_by: str = "system") -> Optional[EmitResult]:
        """Dispatch from an on_commit hook, where an exception would surface in unrelated code."""
        try:
            return self.dispatch(event_type, event, triggered_by)
        except Exception:
            logger.exception(f"Failed to dispatch {event_type} #{event.source_entity_id}")
            return None

    @staticmethod
    def _is_financial(trigger) -> bool:
        for action in trigger.actions:
            handler = get_handler(action.get("type"))
            if handler and handler.is_financial(action.get("config") or {}):
                return True
        return False

    @staticmethod
    def _claim_dedupe_key(trigger, event_type: str, event: BaseEvent, event_log):
        """The claimed key, or None when this trigger already fired for the source entity."""
        from billing.models import WorkflowDedupeKey

        try:
            with transaction.atomic():
                return WorkflowDedupeKey.objects.create(
                    trigger=trigger,
                    event_type=event_type,
                    source_entity_id=event.source_entity_id,
                    event_log=event_log,
                )
        except IntegrityError:
            return None

    @staticmethod
    def _release_dedupe_key(key):
        from billing.models import WorkflowDedupeKey

        WorkflowDedupeKey.objects.filter(pk=key.pk).delete()

    def _log(self, trigger, event_log, event_type: str, result: EmitResult, outcome: ActionOutcome, elapsed_ms: int = 0):
        from billing.models import WorkflowTriggerLog

        WorkflowTriggerLog.objects.create(
            trigger=trigger,
            event_log=event_log,
            event_type=event_type,
            action_index=outcome.action_index,
            action_type=outcome.action_type,
            result=outcome.result,
            detail=outcome.detail,
            error_message=outcome.error,
            execution_time_ms=elapsed_ms,
        )
        result.outcomes.append(outcome)

    def _run_trigger(self, trigger, event_type: str, event: BaseEvent, event_log, result: EmitResult):
        from billing.models import WorkflowTriggerLog

        Result = WorkflowTriggerLog.Result

        if not evaluate(event, trigger.conditions or []):
            result.skipped += 1
            self._log(trigger, event_log, event_type, result,
                      ActionOutcome(trigger.id, None, "", Result.SKIPPED, {"reason": "conditions_not_met"}))
            return

        result.matched += 1

        dedupe_key = None
        if self._is_financial(trigger):
            dedupe_key = self._claim_dedupe_key(trigger, event_type, event, event_log)
            if dedupe_key is None:
                result.skipped += 1
                self._log(trigger, event_log, event_type, result,
                          ActionOutcome(trigger.id, None, "", Result.SKIPPED, {"reason": "duplicate", "source_entity_id": event.source_entity_id}))
                logger.info(f"Trigger {trigger.id} already fired for {event_type} #{event.source_entity_id}; skipping")
                return

        context = ActionContext(event_type=event_type, event=event, trigger=trigger, event_log=event_log)
        financial_results = []
        for index, action in enumerate(trigger.actions):
            action_type = action.get("type", "")
            handler = get_handler(action_type)
            started = time.monotonic()

            if handler is None:
                result.failed += 1
                self._log(trigger, event_log, event_type, result,
                          ActionOutcome(trigger.id, index, action_type, Result.FAILED, error=f"Unknown action type '{action_type}'"))
                continue

            try:
                with transaction.atomic():
                    detail = handler.execute(action.get("config") or {}, context)
            except APIError as e:
                result.failed += 1
                logger.warning(f"Trigger {trigger.id} action {index} ({action_type}) rejected: {e.message}")
                outcome = ActionOutcome(trigger.id, index, action_type, Result.FAILED, {"code": e.code}, e.message)
            except Exception as e:
                result.failed += 1
                logger.exception(f"Trigger {trigger.id} action {index} ({action_type}) failed")
                outcome = ActionOutcome(trigger.id, index, action_type, Result.FAILED, error=str(e))
            else:
                outcome = ActionOutcome(trigger.id, index, action_type, Result.SUCCESS, detail or {})

            if handler.is_financial(action.get("config") or {}):
                financial_results.append(outcome.result)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._log(trigger, event_log, event_type, result, outcome, elapsed_ms)

        # Nothing was billed, so a later emission for the same source may try again
        if dedupe_key is not None and Result.SUCCESS not in financial_results:
            self._release_dedupe_key(dedupe_key)
            logger.info(f"Trigger {trigger.id} released its claim on {event_type} #{event.source_entity_id} after a failed action")

        result.fired += 1

    def _notify_listeners(self, event_type: str, event: BaseEvent):
        for listener in list(self._listeners.get(event_type, [])):
            try:
                listener(event_type, event)
            except Exception:
                logger.exception(f"Listener {getattr(listener, '__name__', listener)} failed on {event_type}")


engine = WorkflowEngine()


def emit_on_commit(event_type: str, data: Dict[str, Any], triggered_by: str = "system") -> BaseEvent:
    """
    Validate an event now and dispatch it once the current transaction commits.

    Outside a transaction the dispatch runs immediately.
    """
    event = build_event(event_type, data)
    transaction.on_commit(lambda: engine.dispatch_safely(str(event_type), event, triggered_by))
    return event
