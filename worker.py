import sys
import logging
import redis
from rq import SimpleWorker, Queue
from loguru import logger

from config import settings
from worker_tasks import cleanup_old_jobs

# Task modules log through the standard library
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Add loguru logger for profiling
logger.add("worker_profile.log", rotation="1 week", retention="4 weeks", level="INFO")

# To reconcile in parallel, run multiple worker.py processes (e.g., with a process manager)

def main(argv):
    if argv[1:] == ["cleanup"]:
        # Meant for cron; the API never deletes jobs itself
        removed = cleanup_old_jobs()
        logger.info(f"Removed {removed} expired jobs")
        return 0

    if not settings.redis_url:
        logger.error("REDIS_URL is required to run the reconcile worker")
        return 1

    redis_conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.reconcile_queue, connection=redis_conn)
    worker = SimpleWorker([queue], connection=redis_conn)
    logger.info(f"Reconcile worker listening on queue '{settings.reconcile_queue}'")
    # Scheduler is needed for enqueue_in and retry intervals
    worker.work(with_scheduler=True)
    return 0

if __name__ == "__main__":
    sys.exit(main(sys.argv))
