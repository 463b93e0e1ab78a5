"""
Worker entry point.
Run with: python -m royalties.worker.runner
"""

import sentry_sdk
import structlog
from prometheus_client import start_http_server
from redis import Redis
from rq import Worker

from royalties.config import settings
from royalties.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def main():
    """Start the RQ worker."""
    setup_logging()

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            release=settings.APP_VERSION,
            traces_sample_rate=0.0,
        )
    if settings.PROMETHEUS_ENABLED:
        start_http_server(settings.METRICS_PORT)

    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
    )

    logger.info("worker_starting", queue=settings.QUEUE_NAME, prometheus=settings.PROMETHEUS_ENABLED)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
