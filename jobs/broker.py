"""
Dramatiq broker configuration.

Redis-based message broker for deposit monitoring tasks. Actor messages
live under their own Redis namespace so the monitor can share a Redis
instance with other dramatiq deployments.
"""

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import CurrentMessage, Retries, default_middleware
from loguru import logger

from btc_deposits.config.constants import (
    TASK_MAX_BACKOFF_MS,
    TASK_MAX_RETRIES,
    TASK_MIN_BACKOFF_MS,
    TASK_QUEUE_NAMESPACE,
)
from btc_deposits.config.settings import settings
from btc_deposits.utils.exceptions import DepositMonitorError

# Raised identically on every attempt; actors list these in throws=
NON_RETRYABLE_ERRORS = (DepositMonitorError,)


def build_middleware() -> list:
    """
    Default dramatiq middleware with the retry policy swapped in.

    Defaults already include ShutdownNotifications, which lets a running
    tick finish on worker shutdown. Per-actor max_retries overrides the
    retry default.
    """
    middleware = [m() for m in default_middleware if m is not Retries]
    middleware.append(CurrentMessage())
    middleware.append(
        Retries(
            max_retries=TASK_MAX_RETRIES,
            min_backoff=TASK_MIN_BACKOFF_MS,
            max_backoff=TASK_MAX_BACKOFF_MS,
        )
    )
    return middleware


def create_broker() -> RedisBroker:
    """Build the Redis broker for deposit monitoring actors."""
    return RedisBroker(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        db=settings.redis_db,
        namespace=TASK_QUEUE_NAMESPACE,
        middleware=build_middleware(),
    )


broker = create_broker()
dramatiq.set_broker(broker)

logger.info(
    f"Deposit task broker ready: redis://{settings.redis_host}:"
    f"{settings.redis_port}/{settings.redis_db} (namespace={TASK_QUEUE_NAMESPACE})"
)
