"""Main application - runs the extraction worker and the queue HTTP surface."""
import signal
import sys
import time

import uvicorn

from media_extractor.logging_conf import logger
from media_extractor import settings
from media_extractor.api import create_app
from media_extractor.db import Database
from media_extractor.queue_service import QueueService
from media_extractor.scheduler import Scheduler


class Application:
    """Wires the store, scheduler and queue service together."""

    def __init__(self):
        self.db = Database()
        self.scheduler = Scheduler(self.db)
        self.service = QueueService(self.db, self.scheduler)
        self.running = False

    def start(self, worker: bool = True):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("Media Attachment Extractor")
        logger.info("=" * 50)
        logger.info(f"Worker: {'enabled' if worker else 'disabled'}")
        logger.info(f"Poll interval: {settings.WORKER_POLL_INTERVAL}s")
        logger.info(f"Concurrency: {settings.WORKER_CONCURRENCY} (max {settings.WORKER_MAX_PER_PASS}/pass)")
        logger.info("=" * 50)

        settings.validate_config()
        settings.warn_missing_services(logger)

        self.db.ensure_schema()
        self.scheduler.startup_cleanup()

        self.running = True
        if worker:
            self.scheduler.start()
        logger.info("Started - watching for queued attachments")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self.scheduler.stop()
        self.db.close()
        logger.info("Stopped")

    def serve(self):
        """Run the HTTP surface in the foreground; the worker runs in the background."""
        self.start(worker=settings.WORKER_ENABLED)
        try:
            uvicorn.run(create_app(self.service), host=settings.HTTP_HOST, port=settings.HTTP_PORT,
                        log_config=None)
        finally:
            self.stop()

    def run_worker(self):
        """Headless main loop, no HTTP surface."""
        self.start(worker=False)
        time.sleep(settings.WORKER_INITIAL_DELAY)

        while self.running:
            try:
                processed = self.scheduler.run_pass()
                if processed:
                    logger.info(f"Worker pass processed {processed} items")
            except KeyboardInterrupt:
                break
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)

            time.sleep(settings.WORKER_POLL_INTERVAL)

        self.stop()


def _install_signal_handlers(app: Application):
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def main():
    """Entry point: worker plus HTTP surface."""
    app = Application()
    try:
        app.serve()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


def worker_main():
    """Entry point: worker only."""
    app = Application()
    _install_signal_handlers(app)
    try:
        app.run_worker()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
