# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Eflo Editor Configuration
Reads from environment variables and a .env file in the project root
"""
from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

# Load .env file from project root
env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env")
load_dotenv(env_path)


class Settings(BaseSettings):
    """Editor client settings"""

    # Environment configuration
    environment: str = os.getenv("ENVIRONMENT", "development")  # development, production, or testing
    debug: bool = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "info")

    # Workflow API
    api_base_url: str = os.getenv("EFLO_API_BASE_URL", "http://localhost:8080/api")
    request_timeout_seconds: float = float(os.getenv("EFLO_REQUEST_TIMEOUT", "30"))

    # Retries for transient failures (502/503/504, connect errors, timeouts)
    max_retries: int = int(os.getenv("EFLO_MAX_RETRIES", "2"))
    retry_initial_delay: float = float(os.getenv("EFLO_RETRY_INITIAL_DELAY", "0.5"))
    retry_backoff_factor: float = 2.0

    # Debug run stream. A read timeout of None waits for the server indefinitely
    debug_stream_connect_timeout: float = 10.0
    debug_stream_read_timeout: Optional[float] = None

    # Durable tab storage: memory, file or sqlite
    storage_backend: str = os.getenv("EFLO_STORAGE_BACKEND", "file")
    storage_path: str = os.getenv(
        "EFLO_STORAGE_PATH",
        os.path.join(os.path.expanduser("~"), ".eflo", "editor")
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.environment.lower() == "development"

    class Config:
        # Look for .env in parent directory (project root)
        env_file = os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env")
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file


# Global settings instance
settings = Settings()
