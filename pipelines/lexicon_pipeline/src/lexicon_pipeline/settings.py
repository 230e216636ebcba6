from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEXICON_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )

    # SeforimLibrary database the lines are read from.
    source_db_path: Path | None = None

    gemini_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("LEXICON_GEMINI_API_KEY", "GEMINI_API_KEY")
    )
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_output_tokens: int = 30000
    llm_temperature: float = 0.0
    llm_timeout_s: float = 120.0

    # In-flight LLM calls. Store writes are serialized regardless.
    max_concurrency: int = 1
    batch_size: int = 10

    first_book_id: int = 1
    last_book_id: int = 10

    save_json_backup: bool = True
    # Defaults to the directory of the output database.
    backup_dir: Path | None = None
    invalid_responses_dir: Path = Path("build/invalid-responses")

    release_repo: str = "kdroidFilter/SeforimMagicIndexer"
    release_asset_name: str = "lexical.db"
    download_timeout_s: float = 300.0


settings = Settings()
