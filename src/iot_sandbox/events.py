"""
Delivery of asynchronous session events to application handlers.

SessionManager hands each event to a single delivery worker thread, so handlers
run one call at a time and messages on a topic arrive in order. Handlers never
run on the MQTT network thread or under the session's internal lock, and may
call back into the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SERVER_DISCONNECT = "server-disconnect"
TRANSPORT_ERROR = "transport-error"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes
    retained: bool = False
    qos: int = 0

    def text(self, errors: str = "replace") -> str:
        return self.payload.decode("utf-8", errors=errors)


@dataclass(frozen=True, slots=True)
class SessionNotice:
    kind: str  # SERVER_DISCONNECT | TRANSPORT_ERROR
    reason_code: Optional[int] = None
    reason: str = ""

    def describe(self) -> str:
        if self.kind == SERVER_DISCONNECT:
            if self.reason:
                return f"server requested disconnect: {self.reason}"
            return f"server requested disconnect; reason code: {self.reason_code}"
        return f"connection lost: {self.reason or 'unknown error'} (reason code: {self.reason_code})"


MessageHandler = Callable[[InboundMessage], None]
NoticeHandler = Callable[[SessionNotice], None]


def log_message(msg: InboundMessage) -> None:
    logger.info(
        "received message on topic %s; body: %s (retain: %s)",
        msg.topic,
        msg.text(),
        msg.retained,
    )


def log_notice(notice: SessionNotice) -> None:
    logger.warning("%s", notice.describe())


class EventSink:
    """Two handler slots: one for inbound publishes, one for disconnect/error notices."""

    def __init__(
        self,
        on_message: Optional[MessageHandler] = None,
        on_notice: Optional[NoticeHandler] = None,
    ) -> None:
        self._on_message = on_message
        self._on_notice = on_notice

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._on_message = handler

    def set_notice_handler(self, handler: Optional[NoticeHandler]) -> None:
        self._on_notice = handler

    def deliver_message(self, msg: InboundMessage) -> None:
        handler = self._on_message
        if handler is None:
            logger.debug("No message handler; dropping message on %s", msg.topic)
            return
        try:
            handler(msg)
        except Exception:
            logger.exception("Message handler failed for topic %s", msg.topic)

    def deliver_notice(self, notice: SessionNotice) -> None:
        handler = self._on_notice
        if handler is None:
            log_notice(notice)
            return
        try:
            handler(notice)
        except Exception:
            logger.exception("Notice handler failed for %s", notice.kind)
