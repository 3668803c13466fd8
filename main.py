import logging
import signal
import threading

from database import Base, engine
from scheduler import SchedulerManager

import models  # noqa: F401  (registers the tables on Base.metadata)

logger = logging.getLogger(__name__)


def main() -> None:
    Base.metadata.create_all(bind=engine)

    stop_requested = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info(f"shutdown_requested: signal={signum}")
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    scheduler = SchedulerManager()
    scheduler.start()
    try:
        stop_requested.wait()
    finally:
        scheduler.stop()


if __name__ == "__main__":
    main()
