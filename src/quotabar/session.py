import asyncio
from dataclasses import dataclass
from enum import Enum

import structlog

from quotabar.models import SessionState

logger = structlog.get_logger()


class SessionEvent(str, Enum):
    PAGE_LOADED = "page_loaded"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True, slots=True)
class SessionTransition:
    previous: "SessionState"
    current: "SessionState"
    event: "SessionEvent"


class SessionStateMachine:
    """
    SessionStateMachine tracks whether the document host holds an
    authenticated session.

    Only the host's two lifecycle events move it: a page that loaded
    successfully means the session is usable, an expiry signal means
    it is not. A repeated expiry while already signed out means the
    host is showing the sign-in page, so the state becomes
    authenticating. Every event is published on the events queue;
    the machine never calls its consumers directly.
    """

    def __init__(self) -> "None":
        self._state: "SessionState" = SessionState.UNAUTHENTICATED
        self.events: "asyncio.Queue[SessionTransition]" = asyncio.Queue()

    @property
    def state(self) -> "SessionState":
        return self._state

    @property
    def is_authenticated(self) -> "bool":
        return self._state is SessionState.AUTHENTICATED

    def page_loaded(self) -> "SessionTransition":
        return self._apply(SessionEvent.PAGE_LOADED, SessionState.AUTHENTICATED)

    def session_expired(self) -> "SessionTransition":
        if self._state is SessionState.AUTHENTICATED:
            target = SessionState.UNAUTHENTICATED
        else:
            target = SessionState.AUTHENTICATING
        return self._apply(SessionEvent.SESSION_EXPIRED, target)

    def _apply(
        self,
        event: "SessionEvent",
        target: "SessionState",
    ) -> "SessionTransition":
        transition = SessionTransition(
            previous=self._state, current=target, event=event
        )
        self._state = target
        self.events.put_nowait(transition)
        logger.info(
            "session_transition",
            session_event=event.value,
            previous=transition.previous.value,
            current=target.value,
        )
        return transition
