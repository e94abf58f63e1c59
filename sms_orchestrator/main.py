"""CLI entry point for the SMS orchestrator.

For production webhooks use the FastAPI server (sms_orchestrator/server.py);
this CLI runs the background pieces and a local chat simulator.

Usage:
    python -m sms_orchestrator.main worker            # drain the queue forever
    python -m sms_orchestrator.main sweep             # one follow-up sweep
    python -m sms_orchestrator.main simulate --debug  # chat over a fake SMS line
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import uuid

from dotenv import load_dotenv

from sms_orchestrator.runtime import build_runtime
from sms_orchestrator.services.metrics import metrics
from sms_orchestrator.services.sms_transport import ConsoleSmsTransport
from sms_orchestrator.services.store import MemoryStore

logger = logging.getLogger(__name__)

SIMULATED_PHONE = "+447700900123"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("sms_orchestrator").setLevel(logging.DEBUG if debug else logging.INFO)


def run_worker(poll_interval: float) -> None:
    runtime = build_runtime()

    def _shutdown(signum, frame):
        logger.info("Received signal %d, stopping worker", signum)
        runtime.processor.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        runtime.processor.run_forever(poll_interval=poll_interval)
    finally:
        runtime.close()
        metrics.flush()


def run_sweep() -> None:
    runtime = build_runtime()
    try:
        report = runtime.dispatcher.sweep()
        print(json.dumps(report.as_dict(), indent=2))
    finally:
        runtime.close()
        metrics.flush()


def run_simulator(phone: str) -> None:
    """Interactive chat: messages go through the real queue and turn graph,
    outbound SMS are printed instead of sent."""
    transport = ConsoleSmsTransport()
    runtime = build_runtime(store=MemoryStore(), transport=transport, iteration_delay=0)

    print("\n" + "=" * 60)
    print(f"  SMS Orchestrator - simulated line for {phone}")
    print("=" * 60)
    print("  Type a message and press Enter.")
    print("  Commands: 'quit' to exit, 'sweep' to deliver due follow-ups.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        already_sent = len(transport.sent)
        if user_input.lower() == "sweep":
            print(f"  {runtime.dispatcher.sweep().as_dict()}")
        else:
            runtime.queue.enqueue(phone, user_input, f"SMsim{uuid.uuid4().hex[:24]}")
            report = runtime.processor.process_queue()
            if report.failed:
                print("  (turn failed; it will be retried on the next message)")

        for sms in transport.sent[already_sent:]:
            print(f"\nSMS [{sms.message_type}]: {sms.message}\n")

        pending = runtime.scheduler.list_followups(phone)
        if pending:
            print(f"  ({len(pending)} follow-up(s) scheduled)")

    runtime.close()


def main():
    parser = argparse.ArgumentParser(description="SMS orchestrator CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    worker = commands.add_parser("worker", help="Drain the intake queue until stopped")
    worker.add_argument("--poll-interval", type=float, default=1.0)

    commands.add_parser("sweep", help="Deliver due follow-ups once and exit")

    simulate = commands.add_parser("simulate", help="Chat over a simulated SMS line")
    simulate.add_argument("--phone", default=SIMULATED_PHONE)

    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    if args.command == "worker":
        run_worker(args.poll_interval)
    elif args.command == "sweep":
        run_sweep()
    else:
        run_simulator(args.phone)


if __name__ == "__main__":
    main()
