"""
CourtView Worker - Entry point.

Starts the APScheduler polling engine and, when COURTVIEW_API_ENABLED is
set, serves the HTTP API on the same event loop.
"""

import asyncio
import logging

import uvicorn

from courtview.config import settings
from courtview.polling import close_worker, setup_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("courtview")


async def _serve_forever() -> None:
    if settings.api_enabled:
        config = uvicorn.Config(
            "courtview.api:app",
            host=settings.api_host,
            port=settings.api_port,
            log_config=None,
        )
        logger.info("Serving API on %s:%d", settings.api_host, settings.api_port)
        await uvicorn.Server(config).serve()
        return
    while True:
        await asyncio.sleep(1)


async def run() -> None:
    logger.info("CourtView worker starting...")
    scheduler = setup_scheduler()
    scheduler.start()
    try:
        await _serve_forever()
    except (KeyboardInterrupt, SystemExit):
        logger.info("CourtView worker received shutdown signal.")
    except Exception:
        logger.critical("CourtView worker crashed with unexpected error", exc_info=True)
    finally:
        # Release the schedule client's connection pool.
        try:
            await close_worker()
        except Exception:
            logger.warning("Failed to close schedule client", exc_info=True)

        scheduler.shutdown()
        logger.info("CourtView worker stopped.")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
