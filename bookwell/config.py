from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreAdapter(Enum):
    MEMORY = "memory"
    POSTGREST = "postgrest"


class StoreConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORE_", env_file=".env", extra="ignore")

    adapter: StoreAdapter = StoreAdapter.MEMORY
    url: str = "http://localhost:3000"
    api_key: str = ""
    timeout_seconds: float = 30.0
    poll_interval_seconds: float | None = Field(default=None, gt=0)


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    business_timezone: str = "UTC"
    store: StoreConfig = Field(default_factory=lambda: StoreConfig())
