"""
iot-sandbox entrypoint.

CLI:
  iot-sandbox sandbox --env PATH   -> connect to the broker described by PATH,
                                      subscribe, publish, run until SIGINT/SIGTERM
"""

from __future__ import annotations

import argparse
import logging
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional, Sequence

from iot_sandbox.config import ConfigError, resolve
from iot_sandbox.events import EventSink, SessionNotice, log_message, log_notice
from iot_sandbox.log_config import configure_logging
from iot_sandbox.session import CANCELLED, ProtocolError, SessionManager
from iot_sandbox.shutdown import ShutdownController
from iot_sandbox.topics import DEMO_FILTER, DEMO_PAYLOAD, DEMO_QOS, DEMO_TOPIC
from iot_sandbox.transport import TransportError, open_transport

logger = logging.getLogger(__name__)


def get_version_string() -> str:
    try:
        return pkg_version("iot-sandbox")
    except PackageNotFoundError:
        return "0.0.0+dev"


def run_sandbox(
    env_file: str,
    *,
    filters: Sequence[str] = (DEMO_FILTER,),
    topic: str = DEMO_TOPIC,
    payload: str = DEMO_PAYLOAD,
    qos: int = DEMO_QOS,
    retain: bool = False,
    connect_timeout: float = 30.0,
    install_signals: bool = True,
) -> int:
    """
    Sandbox mode: resolve settings, connect, subscribe, publish, block until shutdown.
    Returns process exit code.
    """
    try:
        settings = resolve(env_file)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    logger.info("Connection settings: %s", settings.redacted())

    sink = EventSink(on_message=log_message)
    session = SessionManager(sink, connect_timeout=connect_timeout)
    controller = ShutdownController(session)

    def _on_notice(notice: SessionNotice) -> None:
        log_notice(notice)
        controller.request_shutdown(notice.kind)

    sink.set_notice_handler(_on_notice)

    if install_signals:
        controller.install()
    try:
        transport = open_transport(settings)
        session.connect(transport, settings, controller.token)
        session.subscribe([(f, qos) for f in filters], controller.token)
        session.publish(topic, payload, qos=qos, retain=retain, token=controller.token)

        logger.info("Sandbox running (shutdown via SIGINT/SIGTERM)")
        controller.wait()
    except TransportError as exc:
        logger.error("Transport error: %s", exc)
        return 1
    except ProtocolError as exc:
        if exc.kind == CANCELLED:
            logger.info("Shutdown requested before the session was ready: %s", exc)
            return 0
        logger.error("Protocol error: %s", exc)
        return 1
    finally:
        controller.shutdown()
        if install_signals:
            controller.uninstall()

    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="iot-sandbox")
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument(
        "--log-level",
        metavar="LEVEL",
        help="Log level (default: $IOT_SANDBOX_LOG_LEVEL or INFO)",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    sandbox = sub.add_parser("sandbox", help="Connect to an MQTT broker and exchange a message")
    sandbox.add_argument("-e", "--env", required=True, metavar="PATH", help="Path to .env file")
    sandbox.add_argument(
        "--filter",
        dest="filters",
        action="append",
        metavar="FILTER",
        help=f"Topic filter to subscribe to; repeatable (default: {DEMO_FILTER})",
    )
    sandbox.add_argument("--topic", default=DEMO_TOPIC, help="Topic to publish to")
    sandbox.add_argument("--payload", default=DEMO_PAYLOAD, help="Payload to publish")
    sandbox.add_argument("--qos", type=int, choices=(0, 1, 2), default=DEMO_QOS)
    sandbox.add_argument("--retain", action="store_true", help="Publish with the retain flag")
    sandbox.add_argument(
        "--connect-timeout",
        type=float,
        default=30.0,
        metavar="SECONDS",
        help="How long to wait for CONNACK",
    )

    return p


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.cmd == "sandbox":
        raise SystemExit(
            run_sandbox(
                args.env,
                filters=args.filters or [DEMO_FILTER],
                topic=args.topic,
                payload=args.payload,
                qos=args.qos,
                retain=args.retain,
                connect_timeout=args.connect_timeout,
            )
        )

    raise SystemExit(2)


if __name__ == "__main__":
    main()
