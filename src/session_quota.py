from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from usage_models import Provider

LOG = logging.getLogger(__name__)

# Remaining-percent at or below this value counts as depleted. Only an exact 0
# is depleted by default; settings may widen it via ``depletion_epsilon``.
DEFAULT_DEPLETION_EPSILON = 0.0


class SessionQuotaTransition(str, Enum):
    NONE = "none"
    DEPLETED = "depleted"
    REFILLED = "refilled"


def is_depleted(remaining: float | None, epsilon: float = DEFAULT_DEPLETION_EPSILON) -> bool:
    if remaining is None:
        return False
    return remaining <= epsilon


def transition(
    previous_remaining: float | None,
    current_remaining: float,
    epsilon: float = DEFAULT_DEPLETION_EPSILON,
) -> SessionQuotaTransition:
    if previous_remaining is None:
        return SessionQuotaTransition.NONE
    was_depleted = is_depleted(previous_remaining, epsilon)
    now_depleted = is_depleted(current_remaining, epsilon)
    if not was_depleted and now_depleted:
        return SessionQuotaTransition.DEPLETED
    if was_depleted and not now_depleted:
        return SessionQuotaTransition.REFILLED
    return SessionQuotaTransition.NONE


_TITLES = {
    SessionQuotaTransition.DEPLETED: "{name} session depleted",
    SessionQuotaTransition.REFILLED: "{name} session restored",
}
_BODIES = {
    SessionQuotaTransition.DEPLETED: "0% left. Will notify when it's available again.",
    SessionQuotaTransition.REFILLED: "Session quota is available again.",
}


class SessionQuotaNotifier:
    def __init__(self, sink: Callable[[SessionQuotaTransition, Provider, str, str], None] | None = None) -> None:
        self._sink = sink

    def post(self, transition: SessionQuotaTransition, provider: Provider) -> None:
        if transition is SessionQuotaTransition.NONE:
            return
        title = _TITLES[transition].format(name=provider.value.capitalize())
        body = _BODIES[transition]
        LOG.info("notification posted: provider=%s transition=%s", provider.value, transition.value)
        if self._sink is not None:
            self._sink(transition, provider, title, body)
