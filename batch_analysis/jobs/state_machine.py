"""Job item transition table.

Pure data: which events are allowed from which statuses, where they lead,
and which transition marker a completed event clears. Side effects live in
``batch_analysis.jobs.orchestrator``.

    queue   new -> queued (refused while a cancel is pending)
    work    queued -> working
    finish  queued | working | finished -> finished
    cancel  new | queued | working -> finished
    retry   finished -> queued
"""

from dataclasses import dataclass
from typing import Callable, Optional

from batch_analysis.errors import IllegalTransitionError
from batch_analysis.jobs.models import JobItem
from batch_analysis.jobs.types import ItemEvent, ItemStatus, ItemTransition

# A guard returns a refusal reason, or None when the event may proceed
Guard = Callable[[JobItem], Optional[str]]


@dataclass(frozen=True)
class EventRule:
    sources: frozenset[ItemStatus]
    target: ItemStatus
    guard: Optional[Guard] = None
    clears_marker: Optional[ItemTransition] = None


def _no_pending_cancel(item: JobItem) -> Optional[str]:
    if item.transition == ItemTransition.CANCEL:
        return "a cancel is pending"
    return None


TRANSITIONS: dict[ItemEvent, EventRule] = {
    ItemEvent.QUEUE: EventRule(
        sources=frozenset({ItemStatus.NEW}),
        target=ItemStatus.QUEUED,
        guard=_no_pending_cancel,
        clears_marker=ItemTransition.QUEUE,
    ),
    ItemEvent.WORK: EventRule(
        sources=frozenset({ItemStatus.QUEUED}),
        target=ItemStatus.WORKING,
    ),
    ItemEvent.FINISH: EventRule(
        sources=frozenset({ItemStatus.QUEUED, ItemStatus.WORKING, ItemStatus.FINISHED}),
        target=ItemStatus.FINISHED,
        clears_marker=ItemTransition.FINISH,
    ),
    ItemEvent.CANCEL: EventRule(
        sources=frozenset({ItemStatus.NEW, ItemStatus.QUEUED, ItemStatus.WORKING}),
        target=ItemStatus.FINISHED,
        clears_marker=ItemTransition.CANCEL,
    ),
    ItemEvent.RETRY: EventRule(
        sources=frozenset({ItemStatus.FINISHED}),
        target=ItemStatus.QUEUED,
        clears_marker=ItemTransition.RETRY,
    ),
}


def refusal(item: JobItem, event: ItemEvent) -> Optional[str]:
    """Why ``event`` cannot fire for ``item``, or None if it can."""
    rule = TRANSITIONS[event]
    if item.status not in rule.sources:
        allowed = ", ".join(sorted(s.value for s in rule.sources))
        return f"allowed only from {allowed}"
    if rule.guard is not None:
        return rule.guard(item)
    return None


def may_fire(item: JobItem, event: ItemEvent) -> bool:
    return refusal(item, event) is None


def target_state(item: JobItem, event: ItemEvent) -> ItemStatus:
    """The status ``event`` leads to.

    Raises:
        IllegalTransitionError: If the event is not allowed for the item
    """
    reason = refusal(item, event)
    if reason is not None:
        raise IllegalTransitionError(item.id, item.status.value, event.value, reason)
    return TRANSITIONS[event].target
