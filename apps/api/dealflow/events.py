from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dealflow.context import get_actor_user_id, get_correlation_id


@dataclass
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]

published_events: list[dict[str, Any]] = []
_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


def subscribe(event_type: str, handler: EventHandler) -> None:
    if handler not in _subscribers[event_type]:
        _subscribers[event_type].append(handler)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("actor_user_id") is None:
        envelope["actor_user_id"] = get_actor_user_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return
    event = DomainEvent(name=event_type, payload=envelope)
    for handler in list(_subscribers.get(event_type, [])):
        handler(event)
