from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

from dm_gateway.protocols.base import MAX_FRAME_SIZE


class Settings(BaseSettings):
    # TCP listener
    HOST: str = "0.0.0.0"
    PORT: int = 20200

    # Traccar (OsmAnd protocol) forwarding
    TRACCAR_URL: str = "http://localhost:5055"
    TRACCAR_ENABLED: bool = True
    FORWARD_TIMEOUT: float = 10.0

    # Connection limits
    IDLE_TIMEOUT: int = 600  # seconds without data before disconnect
    MAX_BUFFER_SIZE: int = 2 * MAX_FRAME_SIZE  # cap on retained, unconsumed bytes

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = '.env'


@lru_cache()
def get_settings() -> Settings:
    return Settings()
