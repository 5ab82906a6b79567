"""
Entity transition tables.

Every status-bearing entity touched by a worker declares its legal edges as
(from_state, event) → to_state. Pipelines ask the table for the next state
instead of writing status fields directly, so an edge that is not listed
is rejected with InvalidTransitionError.

Usage:
    new_status = SOCIAL_POST_TRANSITIONS.next_state(post.status, "start_publish")
"""
from __future__ import annotations

from enum import Enum
from typing import Hashable, Iterable, Optional

import structlog

from models.schemas import SocialPostStatus, SpaceRequestStatus, SyncStatus

logger = structlog.get_logger()


class InvalidTransitionError(Exception):
    """Raised when an event is not allowed from the entity's current state."""

    def __init__(self, entity: str, from_state: Optional[Hashable], event: str):
        self.entity = entity
        self.from_state = from_state
        self.event = event
        state = from_state.value if isinstance(from_state, Enum) else from_state
        super().__init__(f"{entity}: event '{event}' not allowed from state '{state}'")


class TransitionTable:
    """Explicit from-state × event → to-state map with a guard."""

    def __init__(self, entity: str, edges: Iterable[tuple[Iterable[Optional[Hashable]], str, Hashable]]):
        self.entity = entity
        self._table: dict[tuple[Optional[Hashable], str], Hashable] = {}
        for from_states, event, to_state in edges:
            for from_state in from_states:
                key = (from_state, event)
                if key in self._table and self._table[key] != to_state:
                    raise ValueError(f"{entity}: conflicting edge for {key}")
                self._table[key] = to_state

    def can_fire(self, current: Optional[Hashable], event: str) -> bool:
        return (current, event) in self._table

    def next_state(self, current: Optional[Hashable], event: str) -> Hashable:
        try:
            return self._table[(current, event)]
        except KeyError:
            logger.warning("invalid_transition",
                           entity=self.entity,
                           from_state=getattr(current, "value", current),
                           transition_event=event)
            raise InvalidTransitionError(self.entity, current, event) from None

    def events_from(self, current: Optional[Hashable]) -> list[str]:
        return sorted(event for (state, event) in self._table if state == current)


_P = SocialPostStatus

SOCIAL_POST_TRANSITIONS = TransitionTable("SocialPost", [
    ([_P.DRAFT], "schedule", _P.SCHEDULED),
    # PUBLISHING → PUBLISHING is a retried job re-entering the pipeline;
    # FAILED → PUBLISHING is a re-publish requested by the admin.
    ([_P.DRAFT, _P.SCHEDULED, _P.PUBLISHING, _P.FAILED], "start_publish", _P.PUBLISHING),
    ([_P.PUBLISHING], "publish_succeeded", _P.PUBLISHED),
    ([_P.PUBLISHING], "publish_failed", _P.FAILED),
])

_S = SyncStatus

EVENT_SYNC_TRANSITIONS = TransitionTable("EventSync", [
    # SYNCING is held by the exporting job; a second export must wait for it
    ([None, _S.SUCCESS, _S.FAILED], "start", _S.SYNCING),
    ([_S.SYNCING], "complete", _S.SUCCESS),
    ([_S.SYNCING], "fail", _S.FAILED),
])

_R = SpaceRequestStatus

SPACE_REQUEST_TRANSITIONS = TransitionTable("SpaceRequest", [
    ([_R.PENDING], "quote", _R.NEEDS_PAYMENT),
    ([_R.NEEDS_PAYMENT], "pay", _R.PAID_HOLD),
    ([_R.PAID_HOLD], "confirm", _R.CONFIRMED),
    ([_R.PENDING, _R.NEEDS_PAYMENT], "decline", _R.DECLINED),
    ([_R.PENDING, _R.NEEDS_PAYMENT], "expire", _R.EXPIRED),
    ([_R.PENDING, _R.NEEDS_PAYMENT, _R.PAID_HOLD], "cancel", _R.CANCELLED),
])
