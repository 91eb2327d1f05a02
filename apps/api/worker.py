"""RQ worker process entrypoint for enhancement jobs."""

import logging

from rq import Worker

from config import settings
from services.enhancement_queue import ENHANCEMENT_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=settings.LOG_LEVEL)
    redis_conn = get_redis_connection()
    worker = Worker([ENHANCEMENT_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
