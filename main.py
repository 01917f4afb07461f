import argparse
import logging
import signal
import sys
import threading
from typing import Optional, Sequence

from config import get_settings
from database import Base, build_engine, build_session_factory
from recurrence import RecurrenceProcessor
from scheduler import SchedulerManager

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Materialize due recurring transactions into monthly ledgers."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process all templates once and exit instead of scheduling.",
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before running (otherwise use alembic).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    engine = build_engine(settings)
    try:
        if args.create_schema:
            Base.metadata.create_all(engine)
        processor = RecurrenceProcessor(
            build_session_factory(engine),
            tz=settings.timezone,
            concurrency=settings.concurrency,
        )

        if args.once:
            report = processor.run()
            return 1 if report.failed else 0

        manager = SchedulerManager(processor, settings)
        stopped = threading.Event()

        def _handle_signal(signum, _frame):
            logger.info(f"Received signal {signum}, shutting down")
            stopped.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        manager.start()
        try:
            stopped.wait()
        finally:
            manager.stop()
        return 0
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
