from __future__ import annotations

import argparse
import asyncio
import logging

from shared.protocol import DEFAULT_MAX_CALL_SECONDS, DEFAULT_STUN_URL, DEFAULT_UI_PORT

from .app import ClientApp
from .config import CallSettings, default_ice_servers

QUIET_LOGGERS = ("aioice", "aiortc", "socketio", "engineio")


def main() -> None:
    parser = argparse.ArgumentParser(description="Two-party peer-to-peer call client")
    parser.add_argument("signaling_url", help="URL of the Socket.IO signaling relay")
    parser.add_argument("--room", help="Join this room as soon as the client starts")
    parser.add_argument(
        "--max-call-seconds",
        type=int,
        default=DEFAULT_MAX_CALL_SECONDS,
        help="End the call automatically after this many seconds",
    )
    parser.add_argument("--stun-url", default=DEFAULT_STUN_URL, help="STUN server URL")
    parser.add_argument("--turn-url", help="Optional TURN server URL")
    parser.add_argument("--turn-username", help="TURN username")
    parser.add_argument("--turn-credential", help="TURN credential")
    parser.add_argument(
        "--require-connectivity",
        action="store_true",
        help="Only report the call active once the peer connection is connected",
    )
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local UI web server")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    if log_level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    try:
        settings = CallSettings(
            signaling_url=args.signaling_url,
            max_call_seconds=args.max_call_seconds,
            ice_servers=default_ice_servers(
                stun_url=args.stun_url,
                turn_url=args.turn_url,
                turn_username=args.turn_username,
                turn_credential=args.turn_credential,
            ),
            require_connectivity=args.require_connectivity,
        )
    except ValueError as exc:
        parser.error(str(exc))

    async def _run() -> None:
        app = ClientApp(settings, auto_join_room=args.room)
        await app.run(host=args.ui_host, port=args.ui_port)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
