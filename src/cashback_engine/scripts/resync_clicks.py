"""Convert clicks whose approved postback was never applied.

Safe to run repeatedly. Ctrl-C stops after the current click; rerun with
``--start-after`` set to the reported ``last_click_id`` to resume.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from ..config import settings
from ..db import SessionFactory, _engine
from ..models import Base
from ..services.reversals import ReversalCoordinator


async def run(start_after: int, batch_size: int | None) -> int:
    stop_requested = False

    def request_stop() -> None:
        nonlocal stop_requested
        logging.getLogger(__name__).warning("Stop requested, finishing current click")
        stop_requested = True

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, request_stop)
    try:
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        coordinator = ReversalCoordinator(SessionFactory, settings.reconciliation, actor="resync_cli")
        report = await coordinator.resync(
            should_stop=lambda: stop_requested,
            start_after=start_after,
            batch_size=batch_size,
        )
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await _engine.dispose()
    print(
        f"synced={report.synced} skipped={report.skipped} errored={report.errored} "
        f"unpaid={len(report.unpaid_clicks)} last_click_id={report.last_click_id} "
        f"interrupted={report.interrupted}"
    )
    return 1 if report.errored else 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--start-after", type=int, default=0, help="resume after this click pk")
    parser.add_argument("--batch-size", type=int, default=None)
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level)
    raise SystemExit(asyncio.run(run(args.start_after, args.batch_size)))


if __name__ == "__main__":
    main()
