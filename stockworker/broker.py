import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker

from stockledger.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def build_broker(settings: Settings | None = None) -> dramatiq.Broker:
    settings = settings or get_settings()
    if settings.inline_jobs:
        # no Redis round-trips; messages stay in process until a worker drains them
        return StubBroker()
    return RedisBroker(url=settings.redis_url)


broker = build_broker()
dramatiq.set_broker(broker)
logger.debug("dramatiq broker: %s", type(broker).__name__)
