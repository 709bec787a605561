"""Run ARQ worker. Usage: python -m aidispatch.worker.run_worker"""

from arq import run_worker

from aidispatch.worker.tasks import dispatch_generation, get_redis_settings, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [dispatch_generation]
    on_startup = startup
    on_shutdown = shutdown
    # no arq-level retries; a dispatch retries and settles on its own
    max_tries = 1


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
