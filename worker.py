from __future__ import annotations

import logging
import os

import redis
from rq import Queue, Worker

from app.core.settings import settings


def main() -> None:
    logging.basicConfig(level=settings.log_level)
    listen = ["default"]
    conn = redis.from_url(settings.redis_url)

    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    # Ensure module path
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    main()
