"""Configuration management for the Gmail→Drive invoice pipeline."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AccountRole

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_KEYWORDS = "invoice,invoices,fatura,faturas"


def _split_list(value: str | Sequence[str] | None, coerce_lower: bool = True) -> list[str]:
    """Turn delimiter-separated env strings into cleaned lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[;,]", value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        cleaned.append(trimmed.lower() if coerce_lower else trimmed)
    return cleaned


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    gmail_client_id: str = Field(..., alias="GOOGLE_GMAIL_CLIENT_ID")
    gmail_client_secret: str = Field(..., alias="GOOGLE_GMAIL_CLIENT_SECRET")
    drive_client_id: str = Field(..., alias="GOOGLE_DRIVE_CLIENT_ID")
    drive_client_secret: str = Field(..., alias="GOOGLE_DRIVE_CLIENT_SECRET")
    drive_folder_location: str = Field(..., alias="GOOGLE_DRIVE_FOLDER_LOCATION")

    fetch_invoices_day: int | None = Field(None, alias="FETCH_INVOICES_DAY")
    target_keywords_raw: str = Field(
        DEFAULT_KEYWORDS, alias="TARGET_KEYWORDS_TO_FETCH_AND_DOWNLOAD"
    )

    token_dir: Path = Field(Path("~/.config/invoice-pilot"), alias="TOKEN_DIR")
    gmail_redirect_port: int = Field(8080, alias="GMAIL_REDIRECT_PORT")
    drive_redirect_port: int = Field(8080, alias="DRIVE_REDIRECT_PORT")
    auth_timeout_seconds: float = Field(300.0, alias="AUTH_TIMEOUT_SECONDS")
    open_browser: bool = Field(True, alias="OPEN_BROWSER")

    max_concurrent_uploads: int = Field(4, alias="MAX_CONCURRENT_UPLOADS", ge=1)
    retry_max_attempts: int = Field(3, alias="RETRY_MAX_ATTEMPTS", ge=1)
    retry_initial_wait_seconds: float = Field(1.0, alias="RETRY_INITIAL_WAIT_SECONDS")
    retry_max_wait_seconds: float = Field(30.0, alias="RETRY_MAX_WAIT_SECONDS")

    debug_logs_enabled: bool = Field(False, alias="DEBUG_LOGS_ENABLED")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("fetch_invoices_day", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("fetch_invoices_day")
    @classmethod
    def _validate_day(cls, value):
        if value is not None and not 1 <= value <= 31:
            raise ValueError("FETCH_INVOICES_DAY must be between 1 and 31")
        return value

    @field_validator("token_dir")
    @classmethod
    def _expand_token_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("drive_folder_location")
    @classmethod
    def _validate_folder_location(cls, value: str) -> str:
        if not [part for part in value.split("/") if part.strip()]:
            raise ValueError("GOOGLE_DRIVE_FOLDER_LOCATION cannot be empty")
        return value

    @field_validator("target_keywords_raw")
    @classmethod
    def _validate_keywords(cls, value: str) -> str:
        if not _split_list(value):
            raise ValueError(
                "TARGET_KEYWORDS_TO_FETCH_AND_DOWNLOAD must contain at least one keyword"
            )
        return value

    @property
    def target_keywords(self) -> list[str]:
        return _split_list(self.target_keywords_raw, coerce_lower=True)

    @property
    def base_folder_segments(self) -> list[str]:
        """Base destination path split into folder names."""
        return [part.strip() for part in self.drive_folder_location.split("/") if part.strip()]

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug_logs_enabled else self.log_level

    def client_credentials(self, role: AccountRole) -> tuple[str, str]:
        """OAuth client id/secret pair for one account role."""
        if role is AccountRole.SOURCE:
            return self.gmail_client_id, self.gmail_client_secret
        return self.drive_client_id, self.drive_client_secret

    def redirect_port(self, role: AccountRole) -> int:
        if role is AccountRole.SOURCE:
            return self.gmail_redirect_port
        return self.drive_redirect_port
