import asyncio
from typing import Awaitable, Callable

from logger_config import setup_logger

logger = setup_logger()


async def run_periodically(name: str, interval_seconds: float, job: Callable[[], Awaitable]):
    """Run ``job`` every ``interval_seconds`` until cancelled. A failing run does not stop the loop."""
    logger.debug(f"Background job '{name}' scheduled every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await job()
        except Exception:
            logger.exception(f"Background job '{name}' failed")


def start_background_job(name: str, interval_seconds: float, job: Callable[[], Awaitable]) -> asyncio.Task:
    return asyncio.create_task(run_periodically(name, interval_seconds, job), name=name)


async def stop_background_jobs(tasks):
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
