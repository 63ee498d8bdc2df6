from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# --------------------------------
# 設定値

# Raindrop API の「全ブックマーク」コレクションID
ALL_COLLECTION_ID = 0

# ワーカー数（同時に処理するブックマーク数）
DEFAULT_MAX_WORKERS = 5

# リクエスト間の最小間隔（秒）
DEFAULT_MIN_REQUEST_INTERVAL = 0.2

# 1回の取得のタイムアウト（秒）
DEFAULT_FETCH_TIMEOUT = 20.0

# 取得の最大試行回数（リトライ含む）
DEFAULT_FETCH_MAX_ATTEMPTS = 3

# ノート送信の最大試行回数（リトライ含む）
DEFAULT_SUBMIT_MAX_ATTEMPTS = 3

# 指数バックオフの基準秒数と上限秒数
RETRY_BACKOFF_BASE = 1.0
RETRY_BACKOFF_MAX = 30.0

# 要約の最大文字数
SUMMARY_MAX_CHARS = 600

# ノートに載せる本文抜粋の最大文字数
EXCERPT_MAX_CHARS = 2_000

# 抽出する最大文字数
MAX_EXTRACT_CHARS = 50_000

DEFAULT_OUTPUT_DIR = "output"
DEFAULT_FALLBACK_OUTPUT_DIR = str(Path(tempfile.gettempdir()) / "raindrop-notebook")
# --------------------------------


class ConfigurationError(ValueError):
    """Raised when the run configuration is invalid before any work starts."""


@dataclass
class Settings:
    raindrop_token: str
    notebook_api_url: str
    notebook_api_token: str
    output_dir: Path = field(default_factory=lambda: Path(DEFAULT_OUTPUT_DIR))
    fallback_output_dir: Optional[Path] = field(default_factory=lambda: Path(DEFAULT_FALLBACK_OUTPUT_DIR))
    max_workers: int = DEFAULT_MAX_WORKERS
    max_in_flight: Optional[int] = None
    min_request_interval: float = DEFAULT_MIN_REQUEST_INTERVAL
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    fetch_max_attempts: int = DEFAULT_FETCH_MAX_ATTEMPTS
    submit_max_attempts: int = DEFAULT_SUBMIT_MAX_ATTEMPTS
    backoff_base: float = RETRY_BACKOFF_BASE
    backoff_max: float = RETRY_BACKOFF_MAX
    max_urls: Optional[int] = None
    summary_max_chars: int = SUMMARY_MAX_CHARS
    excerpt_max_chars: int = EXCERPT_MAX_CHARS
    user_agent: Optional[str] = None
    brevo_api_key: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    to_email: Optional[str] = None
    from_email: Optional[str] = None
    from_name: str = "Raindrop NotebookLM sync"

    @property
    def effective_max_in_flight(self) -> int:
        return self.max_in_flight if self.max_in_flight is not None else self.max_workers

    @property
    def mail_enabled(self) -> bool:
        has_provider = bool((self.brevo_api_key or "").strip() or (self.sendgrid_api_key or "").strip())
        return has_provider and bool(self.to_email) and bool(self.from_email)

    def validate(self) -> None:
        if self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1 (got {self.max_workers}).")
        if self.effective_max_in_flight < 1:
            raise ConfigurationError(f"max_in_flight must be >= 1 (got {self.max_in_flight}).")
        if self.min_request_interval < 0:
            raise ConfigurationError(
                f"min_request_interval must be >= 0 (got {self.min_request_interval})."
            )
        if self.fetch_timeout <= 0:
            raise ConfigurationError(f"fetch_timeout must be > 0 (got {self.fetch_timeout}).")
        if self.fetch_max_attempts < 1:
            raise ConfigurationError(f"fetch_max_attempts must be >= 1 (got {self.fetch_max_attempts}).")
        if self.submit_max_attempts < 1:
            raise ConfigurationError(f"submit_max_attempts must be >= 1 (got {self.submit_max_attempts}).")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigurationError("backoff_base and backoff_max must be >= 0.")
        if self.max_urls is not None and self.max_urls < 0:
            raise ConfigurationError(f"max_urls must be >= 0 (got {self.max_urls}).")
        if self.summary_max_chars < 1:
            raise ConfigurationError(f"summary_max_chars must be >= 1 (got {self.summary_max_chars}).")
        if self.excerpt_max_chars < 0:
            raise ConfigurationError(f"excerpt_max_chars must be >= 0 (got {self.excerpt_max_chars}).")

    @staticmethod
    def from_env() -> "Settings":
        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                raise ValueError(f"Environment variable {name} is required.")
            return value.strip()

        def optional_with_default(name: str, default: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                return default
            return value.strip()

        def optional(name: str) -> str | None:
            value = os.getenv(name)
            if value is None or not value.strip():
                return None
            return value.strip()

        def optional_int(name: str, default: int | None) -> int | None:
            value = optional(name)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as exc:
                raise ValueError(f"Environment variable {name} must be an integer: {value!r}") from exc

        def optional_float(name: str, default: float) -> float:
            value = optional(name)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as exc:
                raise ValueError(f"Environment variable {name} must be a number: {value!r}") from exc

        fallback = optional_with_default("FALLBACK_OUTPUT_DIR", DEFAULT_FALLBACK_OUTPUT_DIR)
        settings = Settings(
            raindrop_token=require("RAINDROP_TOKEN"),
            notebook_api_url=require("NOTEBOOK_API_URL"),
            notebook_api_token=require("NOTEBOOK_API_TOKEN"),
            output_dir=Path(optional_with_default("OUTPUT_DIR", DEFAULT_OUTPUT_DIR)),
            fallback_output_dir=Path(fallback),
            max_workers=optional_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),  # type: ignore[arg-type]
            max_in_flight=optional_int("MAX_IN_FLIGHT", None),
            min_request_interval=optional_float("MIN_REQUEST_INTERVAL", DEFAULT_MIN_REQUEST_INTERVAL),
            fetch_timeout=optional_float("FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT),
            fetch_max_attempts=optional_int("FETCH_MAX_ATTEMPTS", DEFAULT_FETCH_MAX_ATTEMPTS),  # type: ignore[arg-type]
            submit_max_attempts=optional_int("SUBMIT_MAX_ATTEMPTS", DEFAULT_SUBMIT_MAX_ATTEMPTS),  # type: ignore[arg-type]
            max_urls=optional_int("MAX_URLS", None),
            summary_max_chars=optional_int("SUMMARY_MAX_CHARS", SUMMARY_MAX_CHARS),  # type: ignore[arg-type]
            excerpt_max_chars=optional_int("EXCERPT_MAX_CHARS", EXCERPT_MAX_CHARS),  # type: ignore[arg-type]
            user_agent=optional("HTTP_USER_AGENT"),
            brevo_api_key=optional("BREVO_API_KEY"),
            sendgrid_api_key=optional("SENDGRID_API_KEY"),
            to_email=optional("TO_EMAIL"),
            from_email=optional("FROM_EMAIL"),
            from_name=optional_with_default("FROM_NAME", "Raindrop NotebookLM sync"),
        )
        settings.validate()
        return settings
