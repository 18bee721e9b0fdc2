from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import ClientConfig
from .errors import ChannelError, HarmonyError
from .logging_config import setup_logging
from .session.context import SessionCallbacks, SessionContext
from .session.membership import Participant, Role
from .session.queue_model import SOURCE_SPOTIFY, QueueEntry


logger = logging.getLogger(__name__)


async def run(
	config: ClientConfig,
	enqueue: List[str],
	*,
	playing: Optional[bool] = None,
	volume: Optional[int] = None,
) -> int:
	stop = asyncio.Event()

	async def on_terminal_failure(err: HarmonyError) -> None:
		print(f"Session ended: {err}")
		stop.set()

	async def on_queue_changed(queue: List[QueueEntry]) -> None:
		logger.info("queue now %s entries: %s", len(queue), ", ".join(e.name or e.uri for e in queue))

	async def on_roster(guests: List[Participant]) -> None:
		logger.info("roster guests=%s", ", ".join(g.user_id for g in guests) or "-")

	ctx = SessionContext(
		config,
		callbacks=SessionCallbacks(
			on_terminal_failure=on_terminal_failure,
			on_queue_changed=on_queue_changed,
			on_roster=on_roster,
		),
	)
	async with ctx:
		for uri in enqueue:
			try:
				await ctx.add_to_queue(QueueEntry.new(SOURCE_SPOTIFY, uri))
			except ChannelError as e:
				logger.warning("enqueue %s not sent: %s", uri, e)
		if ctx.is_host:
			await apply_playback(ctx, playing, volume)
		elif playing is not None or volume is not None:
			logger.warning("playback flags ignored; only the host controls the player")
		await stop.wait()
	return 1 if ctx.failed else 0


async def apply_playback(ctx: SessionContext, playing: Optional[bool], volume: Optional[int]) -> None:
	try:
		if playing is not None:
			await ctx.set_playing(playing)
		if volume is not None:
			await ctx.set_volume(volume)
	except HarmonyError as e:
		logger.warning("playback control failed: %s", e)


def main(argv: list[str] | None = None) -> int:
	env = ClientConfig.from_env()
	parser = argparse.ArgumentParser(description="harmony session client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use HARMONY_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=env.server_url, help="WebSocket coordination URL")
	parser.add_argument("--queue-url", default=env.queue_url, help="Queue channel URL (defaults to --server-url)")
	parser.add_argument("--session", default=env.session_id, help="Session to join")
	parser.add_argument("--role", choices=[r.value for r in Role], default=env.role.value)
	parser.add_argument("--user-id", default=env.user_id, help="Stable device id")
	parser.add_argument(
		"--enqueue",
		action="append",
		default=[],
		metavar="URI",
		help="Spotify track URI to add once joined (repeatable)",
	)
	playback = parser.add_mutually_exclusive_group()
	playback.add_argument("--play", dest="playing", action="store_const", const=True, help="Host only: resume playback once joined")
	playback.add_argument("--pause", dest="playing", action="store_const", const=False, help="Host only: pause playback once joined")
	parser.add_argument("--volume", type=int, default=None, metavar="PERCENT", help="Host only: set player volume (0-100) once joined")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	env.server_url = args.server_url
	env.queue_url = args.queue_url
	env.session_id = args.session
	env.role = Role(args.role)
	env.user_id = args.user_id

	try:
		return asyncio.run(run(env, args.enqueue, playing=args.playing, volume=args.volume))
	except KeyboardInterrupt:
		return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
