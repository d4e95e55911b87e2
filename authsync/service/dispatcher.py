from __future__ import annotations

import time
from typing import Callable, Dict, Optional

from authsync.logging import get_logger
from authsync.service.provider import AuthEvent, IdentityProviderClient
from authsync.storage.models import Session

logger = get_logger(__name__)


class EventDispatcher:
    """Filters provider events before they reach the SessionStore.

    SIGNED_OUT and AUTH_RESET always pass and clear the debounce window.
    SIGNED_IN and TOKEN_REFRESHED are dropped while a reconciliation or
    action is in flight, and only the first one in each debounce window is
    forwarded.
    """

    def __init__(
        self,
        *,
        is_busy: Callable[[], bool],
        on_reconcile: Callable[[AuthEvent, Optional[Session]], None],
        on_signed_out: Callable[[], None],
        on_reset: Callable[[], None],
        debounce_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._is_busy = is_busy
        self._on_reconcile = on_reconcile
        self._on_signed_out = on_signed_out
        self._on_reset = on_reset
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._window_started: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.counters: Dict[str, int] = {
            "accepted": 0,
            "dropped_in_flight": 0,
            "dropped_debounced": 0,
        }

    def attach(self, provider: IdentityProviderClient) -> None:
        self.detach()
        self._unsubscribe = provider.on_auth_state_change(self.dispatch)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def clear_window(self) -> None:
        self._window_started = None

    def dispatch(self, event: AuthEvent, session: Optional[Session] = None) -> bool:
        """Route one event; returns True when it was forwarded."""
        event = AuthEvent(event)
        if event in (AuthEvent.SIGNED_OUT, AuthEvent.AUTH_RESET):
            self.clear_window()
            self.counters["accepted"] += 1
            logger.info("auth_event_accepted", auth_event=event.value)
            if event is AuthEvent.SIGNED_OUT:
                self._on_signed_out()
            else:
                self._on_reset()
            return True

        if self._is_busy():
            self.counters["dropped_in_flight"] += 1
            logger.debug("auth_event_dropped", auth_event=event.value, reason="in_flight")
            return False

        now = self._clock()
        if self._window_started is not None and now - self._window_started < self.debounce_seconds:
            self.counters["dropped_debounced"] += 1
            logger.debug("auth_event_dropped", auth_event=event.value, reason="debounced")
            return False

        self._window_started = now
        self.counters["accepted"] += 1
        logger.info("auth_event_accepted", auth_event=event.value)
        self._on_reconcile(event, session)
        return True
