"""RQ worker process entrypoint for reconciliation retries."""

from rq import Worker

from services.reconciliation_queue import RECONCILIATION_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([RECONCILIATION_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
