#!/usr/bin/env python3
"""
Run one live Connected Mode conversation from the terminal.

    python -m wavelength_voice [--duration S] [--journal PATH] [--log-level L]

Captions and finished turns are printed as they happen. Ctrl-C stops the
conversation gracefully; a second Ctrl-C engages the kill switch.
"""

import argparse
import asyncio
import logging
import signal
import sys

from .config import load_settings
from .factory import build_orchestrator
from .summarization import JsonlJournalStore

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="wavelength_voice",
                                     description="Live voice conversation with transcription and prosody")
    parser.add_argument("--duration", type=float, default=None,
                        help="Stop after this many seconds (default: run until Ctrl-C)")
    parser.add_argument("--journal", default=None,
                        help="JSON lines file receiving the summarized conversation")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


async def run(args) -> int:
    settings = load_settings()
    store = JsonlJournalStore(args.journal) if args.journal else None
    orchestrator = build_orchestrator(settings, store=store)

    def on_caption(caption):
        marker = "FINAL" if caption.is_finalized else "..."
        print(f"[{marker}] {caption.partial_text} ({caption.speaking_rate_wpm:.0f} wpm)")

    def on_turns(turns):
        turn = turns[-1]
        print(f"User: {turn.user_transcript}")
        if turn.assistant_response:
            print(f"AI: {turn.assistant_response}")

    orchestrator.set_callbacks(
        on_state=lambda state: logger.info(f"State: {state}"),
        on_caption=on_caption,
        on_turns=on_turns,
        on_error=lambda message: print(f"Error: {message}"),
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_sigint():
        if stop_requested.is_set():
            orchestrator.kill_switch()
        stop_requested.set()

    try:
        loop.add_signal_handler(signal.SIGINT, on_sigint)
    except NotImplementedError:
        pass

    if not await orchestrator.start_conversation():
        print(f"Could not start conversation: {orchestrator.error_message}")
        return 1

    print(f"Listening ({orchestrator.connection_status}). Press Ctrl-C to stop.")
    try:
        await asyncio.wait_for(stop_requested.wait(), timeout=args.duration)
    except asyncio.TimeoutError:
        logger.info(f"Duration of {args.duration}s reached")

    await orchestrator.stop_conversation()
    logger.info(f"Stats: {orchestrator.get_stats()}")
    print(f"Conversation ended with {len(orchestrator.turns)} turns")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
