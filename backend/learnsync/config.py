import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

DATA_DIR = Path(os.getenv("LEARNSYNC_DATA_DIR", Path.home() / ".learnsync"))


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="LEARNSYNC_DATABASE_URL")
    database_pool_size: int = Field(5, alias="LEARNSYNC_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(5, alias="LEARNSYNC_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="LEARNSYNC_DATABASE_ECHO")
    connect_timeout: int = Field(5, alias="LEARNSYNC_CONNECT_TIMEOUT", ge=1)
    backend_mode: Literal["auto", "remote", "local"] = Field("auto", alias="LEARNSYNC_BACKEND_MODE")
    identity_url: Optional[str] = Field(None, alias="LEARNSYNC_IDENTITY_URL")
    identity_api_key: Optional[str] = Field(None, alias="LEARNSYNC_IDENTITY_API_KEY")
    certificate_endpoint: Optional[str] = Field(None, alias="LEARNSYNC_CERTIFICATE_ENDPOINT")
    http_timeout: float = Field(10.0, alias="LEARNSYNC_HTTP_TIMEOUT", gt=0)
    snapshot_path: Path = Field(DATA_DIR / "snapshot.json", alias="LEARNSYNC_SNAPSHOT_PATH")
    session_path: Path = Field(DATA_DIR / "session.json", alias="LEARNSYNC_SESSION_PATH")
    password_reset_redirect: Optional[str] = Field(None, alias="LEARNSYNC_PASSWORD_RESET_REDIRECT")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid learnsync configuration: {exc}") from exc
