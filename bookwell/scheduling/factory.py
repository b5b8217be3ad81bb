from typing import Callable

from loguru import logger

from bookwell.config import AppConfig, StoreAdapter
from bookwell.scheduling.adapters.memory import InMemorySchedulingStore
from bookwell.scheduling.adapters.postgrest import PostgrestSchedulingStore
from bookwell.scheduling.service import SchedulingService


def _build_memory(config: AppConfig) -> SchedulingService:
    return SchedulingService(InMemorySchedulingStore(), config.business_timezone)


def _build_postgrest(config: AppConfig) -> SchedulingService:
    store = PostgrestSchedulingStore(
        base_url=config.store.url,
        api_key=config.store.api_key,
        timeout=config.store.timeout_seconds,
        poll_interval=config.store.poll_interval_seconds,
    )
    return SchedulingService(store, config.business_timezone)


_BUILDERS: dict[StoreAdapter, Callable[[AppConfig], SchedulingService]] = {
    StoreAdapter.MEMORY: _build_memory,
    StoreAdapter.POSTGREST: _build_postgrest,
}


def build_scheduling_service(config: AppConfig) -> SchedulingService:
    """Build the scheduling service on the store selected by config."""
    adapter = config.store.adapter
    logger.info("Building scheduling service with store adapter: {}", adapter.value)
    return _BUILDERS[adapter](config)
