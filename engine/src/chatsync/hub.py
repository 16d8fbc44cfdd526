from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from .models import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]

_sub_ids = itertools.count(1)


@dataclass(eq=False)
class FeedSubscription:
    collection: str
    where: object | None
    callback: ChangeCallback
    sub_id: str = field(default_factory=lambda: f"sub_{next(_sub_ids)}")

    def wants(self, event: ChangeEvent) -> bool:
        if event.collection != self.collection:
            return False
        if self.where is None:
            return True
        row = event.old if event.kind is EventKind.DELETE and event.old else event.row
        return self.where.matches(row)

    def deliver(self, event: ChangeEvent) -> None:
        self.callback(event)


class FeedHub:
    """Registers change-feed subscriptions and fans out row events to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[FeedSubscription]] = {}

    def subscribe(self, collection: str, where: object | None, callback: ChangeCallback) -> FeedSubscription:
        subscription = FeedSubscription(collection=collection, where=where, callback=callback)
        self._subscriptions.setdefault(collection, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        subs = self._subscriptions.get(subscription.collection)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.collection, None)

    def broadcast(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.collection, [])):
            if not subscription.wants(event):
                continue
            try:
                subscription.deliver(event)
            except Exception:
                # A broken listener must not fail the write that triggered it.
                logger.exception("change feed callback failed for %s", subscription.sub_id)

    def count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._subscriptions.get(collection, []))
        return sum(len(subs) for subs in self._subscriptions.values())
