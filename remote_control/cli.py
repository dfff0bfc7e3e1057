import argparse
import asyncio
import logging
import sys

from . import config
from .controls import BUTTON_CONTROLS, DEFAULT_CONTROLS
from .app import run_session
from .relay_server import RelayServer

logger = logging.getLogger("remote_control")


def setup_logging(level: str = config.LOG_LEVEL):
    logging.basicConfig(level=level, format=config.LOG_FORMAT)
    # quiet third-party chatter
    for name in ("aiortc", "aioice", "websockets"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def run_relay(host: str, port: int):
    async with RelayServer().serve(host, port):
        logger.info(f"Relay on ws://{host}:{port}")
        await asyncio.Future()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remote_control",
        description="Controller/receiver pairing over a relay and a WebRTC data channel",
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="run the presence/event relay")
    relay.add_argument("--host", default=config.RELAY_HOST)
    relay.add_argument("--port", type=int, default=config.RELAY_PORT)

    join = sub.add_parser("join", help="join a room as controller or receiver")
    join.add_argument(
        "url", nargs="?",
        help=f"page URL; a ?{config.CONTROL_PARAM}=<room> flag makes this the controller",
    )
    join.add_argument("--room", help="receiver room id (default: derived from host name)")
    join.add_argument("--relay", default=config.RELAY_URL, help="relay websocket URL")
    join.add_argument("--serial", help="serial port for control input/output")
    join.add_argument("--site", default=config.SITE_URL, help="base URL for the controller link")
    join.add_argument(
        "--buttons-only", action="store_true", help="sync buttons a and b only, no trackpad",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())

    try:
        if args.command == "relay":
            asyncio.run(run_relay(args.host, args.port))
            return 0
        ok = asyncio.run(run_session(
            url=args.url,
            relay_url=args.relay,
            room_id=args.room,
            serial_port=args.serial,
            site_url=args.site,
            initial=BUTTON_CONTROLS if args.buttons_only else DEFAULT_CONTROLS,
        ))
        return 0 if ok else 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
