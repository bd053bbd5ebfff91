from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from stockledger.adapters.base import AdapterRegistry
from stockledger.core.cache import CacheClient
from stockledger.core.config import get_settings
from stockledger.core.errors import ApiError, AppHTTPException
from stockledger.db.session import get_db
from stockledger.services.container import Services, build_services
from stockledger.services.dispatch import TaskScheduler
from stockworker import runtime
from stockworker.tasks import DramatiqScheduler


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if x_admin_token != settings.admin_token:
        raise AppHTTPException(status_code=401, error=ApiError(code="unauthorized", message="Invalid admin token"))


@lru_cache
def get_cache() -> CacheClient:
    return CacheClient.from_settings()


def get_scheduler() -> TaskScheduler:
    return DramatiqScheduler()


def get_adapters() -> AdapterRegistry:
    return runtime.ADAPTERS


def get_services(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    scheduler: TaskScheduler = Depends(get_scheduler),
    adapters: AdapterRegistry = Depends(get_adapters),
) -> Services:
    return build_services(db, cache, scheduler, adapters=adapters)
