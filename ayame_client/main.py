from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections import Counter
from typing import Any, Optional

from .connection import Connection
from .errors import EXIT_RECV, AyameError
from .logging_config import setup_logging
from .options import ConnectionOptions


logger = logging.getLogger(__name__)

FRAME_LOG_EVERY = 300


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Receive-only Ayame client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use AYAME_LOG_LEVEL.",
	)
	parser.add_argument(
		"--signaling-url",
		default=os.environ.get("AYAME_SIGNALING_URL", "wss://ayame-labo.shiguredo.app/signaling"),
		help="Ayame signaling WebSocket URL",
	)
	parser.add_argument(
		"--room",
		default=os.environ.get("AYAME_ROOM_ID", ""),
		help="Room id to join",
	)
	parser.add_argument("--client-id", default=None, help="Client id (random when omitted)")
	parser.add_argument("--signaling-key", default=None, help="Signaling key for protected rooms")
	parser.add_argument("--debug", action="store_true", help="Log raw frames and SDP bodies")
	return parser


def options_from_args(args: argparse.Namespace) -> ConnectionOptions:
	options = ConnectionOptions.from_env()
	if args.client_id:
		options.client_id = args.client_id
	if args.signaling_key:
		options.signaling_key = args.signaling_key
	return options


async def run(args: argparse.Namespace) -> int:
	conn = Connection(args.signaling_url, args.room, options_from_args(args), debug=args.debug)
	done = asyncio.Event()
	frames: Counter = Counter()
	result = {"reason": None}

	@conn.on_open
	def on_open(metadata: Any) -> None:
		logger.info("open connection_id=%s authz_metadata=%s", conn.connection_id, metadata)

	@conn.on_connect
	def on_connect() -> None:
		logger.info("peer connected")

	@conn.on_track_data
	def on_track_data(track: Any, frame: Any) -> None:
		frames[track.kind] += 1
		if frames[track.kind] % FRAME_LOG_EVERY == 0:
			logger.info("received %s %s frames", frames[track.kind], track.kind)

	@conn.on_bye
	def on_bye() -> None:
		logger.info("remote peer said bye")
		done.set()

	@conn.on_disconnect
	def on_disconnect(reason: str, error: Optional[BaseException]) -> None:
		logger.info("disconnected reason=%s error=%s", reason, error)
		result["reason"] = reason
		done.set()

	try:
		await conn.connect()
	except AyameError as e:
		logger.error("connect failed: %s", e)
		return 1

	try:
		await done.wait()
	finally:
		await conn.disconnect()
	return 0 if result["reason"] in (None, EXIT_RECV) else 1


def main(argv: list[str] | None = None) -> int:
	args = build_parser().parse_args(argv)
	try:
		setup_logging(args.log_level, debug=args.debug)
	except ValueError as e:
		print(e, file=sys.stderr)
		return 2

	if not args.room:
		print("--room (or AYAME_ROOM_ID) is required", file=sys.stderr)
		return 2

	try:
		return asyncio.run(run(args))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
