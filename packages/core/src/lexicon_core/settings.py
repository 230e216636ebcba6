from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEXICON_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Output index; created on first open.
    database_path: Path = Path("build/db/lexical.db")
    database_echo: bool = False


settings = Settings()
