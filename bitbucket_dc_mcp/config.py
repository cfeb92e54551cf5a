"""Application configuration loaded from environment variables."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration for the Bitbucket Data Center MCP Server."""

    # --- Bitbucket ---
    bitbucket_url: str = Field(
        ..., description="Base URL of the Bitbucket Data Center instance"
    )
    bitbucket_token: Optional[str] = Field(
        default=None, description="HTTP access token (sent as Bearer)"
    )
    bitbucket_username: Optional[str] = Field(
        default=None, description="Username for basic auth (used when no token)"
    )
    bitbucket_password: Optional[str] = Field(
        default=None, description="Password for basic auth"
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="Seconds before a REST call times out"
    )
    rate_limit: float = Field(
        default=100.0, gt=0, description="Requests per second sent to Bitbucket (token bucket size and refill rate)"
    )

    # --- Server ---
    transport: Literal["http", "stdio"] = Field(default="http")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    # --- Storage ---
    data_dir: str = Field(
        default="data",
        description="Directory containing operations.json",
    )
    index_dir: str = Field(
        default="data/index",
        description="Directory holding the FAISS index and metadata",
    )
    embedding_model: str = Field(default="sentence-transformers/all-mpnet-base-v2")

    # --- Semantic search ---
    search_cache_size: int = Field(default=1000, gt=0)
    search_cache_ttl: float = Field(
        default=3600.0, gt=0, description="Seconds a cached result set lives"
    )
    search_cache_bypass_prefix: str = Field(default="_")
    search_default_limit: int = Field(default=5, ge=1)
    search_min_limit: int = Field(default=1, ge=1)
    search_max_limit: int = Field(default=100, ge=1)
    max_query_length: int = Field(default=1000, gt=0)
    search_timeout: float = Field(
        default=5.0, gt=0, description="Seconds the search_ids tool waits"
    )
    cache_stats_interval: int = Field(
        default=300, description="Seconds between cache.stats log events"
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # --- Derived helpers ---

    @property
    def operations_path(self) -> Path:
        return Path(self.data_dir) / "operations.json"

    @property
    def index_path(self) -> Path:
        return Path(self.index_dir)

    @property
    def auth_headers(self) -> dict[str, str]:
        """Static credential header for REST calls."""
        if self.bitbucket_token:
            return {"Authorization": f"Bearer {self.bitbucket_token}"}
        if self.bitbucket_username and self.bitbucket_password:
            import base64

            raw = f"{self.bitbucket_username}:{self.bitbucket_password}".encode()
            return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
        return {}


def get_settings() -> Settings:
    """Create and return a validated Settings instance."""
    return Settings()
