"""
MQTT v5 session over an already-opened transport.

The paho client does the framing and runs the network thread (loop_start);
SessionManager owns the session state and turns paho's callbacks into
blocking connect/subscribe/publish calls and EventSink deliveries.

State: DISCONNECTED -> CONNECTING -> CONNECTED -> TERMINATED. Any state can
jump to TERMINATED (reject, timeout, server disconnect, disconnect()).
TERMINATED is final; the transport is never re-dialed.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional, Union

import paho.mqtt.client as mqtt
from paho.mqtt.subscribeoptions import SubscribeOptions

from iot_sandbox.config import ConnectionSettings
from iot_sandbox.events import (
    SERVER_DISCONNECT,
    TRANSPORT_ERROR,
    EventSink,
    InboundMessage,
    SessionNotice,
)
from iot_sandbox.shutdown import POLL_INTERVAL_S, CancelToken
from iot_sandbox.topics import topic_matches, validate_filter, validate_qos, validate_topic
from iot_sandbox.transport import DIAL, TransportError

logger = logging.getLogger(__name__)

REJECT = "reject"
CONNECT_FAILED = "connect-failed"
SUBSCRIBE_REJECTED = "subscribe-rejected"
PUBLISH_FAILED = "publish-failed"
SESSION_CLOSED = "session-closed"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TERMINATED = "terminated"


class ProtocolError(RuntimeError):
    """Raised when the broker rejects a request or the session is unusable."""

    def __init__(self, kind: str, code: Optional[int] = None, reason: str = "") -> None:
        msg = kind
        if code is not None:
            msg += f" (code {code})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.kind = kind
        self.code = code
        self.reason = reason


def _code(rc: Any) -> int:
    return int(getattr(rc, "value", rc))


def _reason_string(properties: Any) -> str:
    return getattr(properties, "ReasonString", "") or ""


class _AdoptedTransportClient(mqtt.Client):
    """paho client that uses a socket opened elsewhere instead of dialing."""

    def __init__(self, transport: Any, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._adopted_transport = transport

    def _create_socket(self) -> Any:
        sock, self._adopted_transport = self._adopted_transport, None
        if sock is None:
            raise TransportError(DIAL, "transport already consumed; reconnect is not supported")
        return sock


def default_client_factory(transport: Any, client_id: str) -> mqtt.Client:
    return _AdoptedTransportClient(
        transport,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv5,
        reconnect_on_failure=False,
    )


ClientFactory = Callable[[Any, str], Any]


class SessionManager:
    """
    Blocking facade over one MQTT session.

    connect(), subscribe() and publish() are single attempts: they wait for the
    broker's acknowledgement (bounded by ack_timeout and the optional cancel
    token) and either return or raise ProtocolError. Inbound messages and
    disconnect notices are handed to a single delivery worker, which calls the
    EventSink in arrival order with no internal lock held. The network thread
    stays free to read acknowledgements, so handlers may call back into the
    manager.
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        *,
        connect_timeout: float = 30.0,
        ack_timeout: float = 30.0,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.sink = sink or EventSink()
        self.connect_timeout = connect_timeout
        self.ack_timeout = ack_timeout
        self._client_factory = client_factory or default_client_factory

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-events")

        self._state = SessionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._transport: Optional[Any] = None
        self._connack: Optional[tuple[int, str]] = None
        self._acks: dict[tuple[str, int], Any] = {}
        self._abandoned: set[tuple[str, int]] = set()
        self._subscriptions: dict[str, int] = {}
        self._pending_filters: set[str] = set()
        self._closing = False
        self._released = False

    # -------------------------
    # State
    # -------------------------
    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def subscriptions(self) -> dict[str, int]:
        with self._lock:
            return dict(self._subscriptions)

    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    def _require_connected(self) -> Any:
        with self._lock:
            if self._state is not SessionState.CONNECTED or self._client is None:
                raise ProtocolError(SESSION_CLOSED, reason=f"session is {self._state.value}")
            return self._client

    def _wait_for(
        self,
        ready: Callable[[], bool],
        timeout: float,
        token: Optional[CancelToken],
        what: str,
    ) -> None:
        # Caller holds self._cond.
        deadline = time.monotonic() + timeout
        while not ready():
            if self._state is SessionState.TERMINATED:
                raise ProtocolError(SESSION_CLOSED, reason=f"session terminated while waiting for {what}")
            if token is not None and token.cancelled:
                raise ProtocolError(CANCELLED, reason=f"cancelled while waiting for {what}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolError(TIMEOUT, reason=f"no {what} within {timeout:g}s")
            self._cond.wait(min(remaining, POLL_INTERVAL_S))

    def _wait_ack(self, key: tuple[str, int], token: Optional[CancelToken], what: str) -> Any:
        with self._cond:
            try:
                self._wait_for(lambda: key in self._acks, self.ack_timeout, token, what)
            except ProtocolError:
                # a late ack for this mid is dropped on arrival
                self._abandoned.add(key)
                raise
            return self._acks.pop(key)

    def _store_ack(self, key: tuple[str, int], value: Any) -> None:
        with self._cond:
            if key in self._abandoned:
                self._abandoned.discard(key)
                logger.debug("Dropping late acknowledgement %s", key)
                return
            self._acks[key] = value
            self._cond.notify_all()

    def _is_subscribed(self, topic: str) -> bool:
        with self._lock:
            filters = list(self._subscriptions) + list(self._pending_filters)
        return any(topic_matches(f, topic) for f in filters)

    def _dispatch(self, deliver: Callable[[Any], None], event: Any) -> None:
        try:
            self._executor.submit(deliver, event)
        except RuntimeError:
            logger.debug("Session closed; dropping %s", type(event).__name__)

    # -------------------------
    # Operations
    # -------------------------
    def connect(
        self,
        transport: Any,
        settings: ConnectionSettings,
        token: Optional[CancelToken] = None,
    ) -> None:
        """
        Send CONNECT over transport and wait for CONNACK.

        On any failure the session is TERMINATED and the transport closed.
        """
        with self._lock:
            if self._state is not SessionState.DISCONNECTED:
                raise ProtocolError(SESSION_CLOSED, reason=f"cannot connect from state {self._state.value}")
            self._state = SessionState.CONNECTING
            self._transport = transport

        client = self._client_factory(transport, settings.client_id)
        if settings.username or settings.password:
            client.username_pw_set(settings.username or None, settings.password or None)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        client.on_message = self._on_message
        with self._lock:
            self._client = client

        logger.info("Attempting to connect to %s", settings.address)
        try:
            rc = client.connect(
                settings.hostname,
                settings.tcp_port,
                keepalive=settings.keep_alive_s,
                clean_start=settings.clean_session,
            )
        except (OSError, ValueError) as exc:
            self.disconnect()
            raise ProtocolError(CONNECT_FAILED, reason=str(exc)) from exc
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self.disconnect()
            raise ProtocolError(CONNECT_FAILED, code=_code(rc), reason=mqtt.error_string(rc))

        client.loop_start()

        try:
            with self._cond:
                self._wait_for(lambda: self._connack is not None, self.connect_timeout, token, "CONNACK")
                code, reason = self._connack
        except ProtocolError:
            self.disconnect()
            raise

        if code != 0:
            self.disconnect()
            logger.error("Failed to connect to %s : %d - %s", settings.hostname, code, reason)
            raise ProtocolError(REJECT, code=code, reason=reason)

        with self._lock:
            if self._state is not SessionState.CONNECTING:
                raise ProtocolError(SESSION_CLOSED, reason="session terminated during connect")
            self._state = SessionState.CONNECTED
        logger.info("Connection successful")

    def subscribe(
        self,
        filters: Iterable[tuple[str, int]],
        token: Optional[CancelToken] = None,
    ) -> list[int]:
        """
        Subscribe to (topic_filter, qos) pairs and wait for SUBACK.

        Returns the granted QoS per filter. Raises ProtocolError(subscribe-rejected)
        if any filter was refused; the accepted ones stay active.
        """
        pairs = [(validate_filter(f), validate_qos(q)) for f, q in filters]
        if not pairs:
            raise ValueError("subscribe requires at least one topic filter")

        client = self._require_connected()
        # retained messages may follow the SUBACK before this thread wakes up
        with self._lock:
            self._pending_filters.update(f for f, _ in pairs)
        try:
            rc, mid = client.subscribe([(f, SubscribeOptions(qos=q)) for f, q in pairs])
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise ProtocolError(SUBSCRIBE_REJECTED, code=_code(rc), reason=mqtt.error_string(rc))
            codes = self._wait_ack(("sub", mid), token, "SUBACK")
        except Exception:
            with self._lock:
                self._pending_filters.difference_update(f for f, _ in pairs)
            raise

        rejected: list[tuple[str, Any]] = []
        with self._lock:
            self._pending_filters.difference_update(f for f, _ in pairs)
            for (topic_filter, _), rc in zip(pairs, codes):
                if _code(rc) >= 0x80:
                    rejected.append((topic_filter, rc))
                else:
                    self._subscriptions[topic_filter] = _code(rc)
        if rejected:
            detail = ", ".join(f"{f}: {rc}" for f, rc in rejected)
            raise ProtocolError(SUBSCRIBE_REJECTED, code=_code(rejected[0][1]), reason=detail)

        for topic_filter, _ in pairs:
            logger.info("Subscribed: %s", topic_filter)
        return [_code(rc) for rc in codes]

    def publish(
        self,
        topic: str,
        payload: Union[bytes, str],
        *,
        qos: int = 1,
        retain: bool = False,
        token: Optional[CancelToken] = None,
    ) -> None:
        """Publish and wait until the broker acknowledged it (or it was written, for QoS 0)."""
        validate_topic(topic)
        validate_qos(qos)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        client = self._require_connected()
        try:
            info = client.publish(topic, payload, qos=qos, retain=retain)
        except (OSError, ValueError) as exc:
            raise ProtocolError(PUBLISH_FAILED, reason=str(exc)) from exc
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ProtocolError(PUBLISH_FAILED, code=_code(info.rc), reason=mqtt.error_string(info.rc))

        try:
            rc = self._wait_ack(("pub", info.mid), token, "publish acknowledgement")
        except ProtocolError as exc:
            if exc.kind == SESSION_CLOSED:
                raise ProtocolError(PUBLISH_FAILED, reason=exc.reason) from exc
            raise
        if _code(rc) >= 0x80:
            raise ProtocolError(PUBLISH_FAILED, code=_code(rc), reason=str(rc))
        logger.debug("Published %d bytes to %s (qos=%d, retain=%s)", len(payload), topic, qos, retain)

    def disconnect(self) -> None:
        """
        Send DISCONNECT if still connected, stop the network thread and close
        the transport. Always leaves the session TERMINATED; repeat calls are no-ops.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
            self._closing = True
            was_connected = self._state is SessionState.CONNECTED
            self._state = SessionState.TERMINATED
            client, transport = self._client, self._transport
            self._cond.notify_all()

        try:
            if client is not None:
                # loop_stop does not join when called from paho's own thread
                client.loop_stop()
                if was_connected:
                    rc = client.disconnect()
                    if rc != mqtt.MQTT_ERR_SUCCESS:
                        logger.warning("DISCONNECT not sent: %s", mqtt.error_string(rc))
            if transport is not None:
                try:
                    transport.close()
                except OSError as exc:
                    logger.warning("Error closing transport: %s", exc)
        finally:
            # the caller may be the delivery worker itself
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Session terminated")

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        with self._cond:
            self._connack = (_code(reason_code), _reason_string(properties) or str(reason_code))
            self._cond.notify_all()

    def _on_subscribe(self, client: Any, userdata: Any, mid: int, reason_codes: Any, properties: Any) -> None:
        self._store_ack(("sub", mid), list(reason_codes))

    def _on_publish(self, client: Any, userdata: Any, mid: int, reason_code: Any, properties: Any) -> None:
        self._store_ack(("pub", mid), reason_code)

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        if not self._is_subscribed(message.topic):
            logger.warning("Message on unsubscribed topic %s dropped", message.topic)
            return
        msg = InboundMessage(
            topic=message.topic,
            payload=bytes(message.payload),
            retained=bool(message.retain),
            qos=message.qos,
        )
        self._dispatch(self.sink.deliver_message, msg)

    def _on_disconnect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        with self._cond:
            # Losses before CONNACK are reported by connect() itself.
            requested = self._closing or self._state is not SessionState.CONNECTED
            self._state = SessionState.TERMINATED
            self._cond.notify_all()
        if requested:
            logger.debug("Disconnected (reason code %s)", reason_code)
            return

        from_server = bool(getattr(flags, "is_disconnect_packet_from_server", False))
        notice = SessionNotice(
            kind=SERVER_DISCONNECT if from_server else TRANSPORT_ERROR,
            reason_code=_code(reason_code),
            reason=_reason_string(properties) or str(reason_code),
        )
        logger.warning("Unexpected disconnect: %s", notice.describe())
        self._dispatch(self.sink.deliver_notice, notice)
