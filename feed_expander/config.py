from __future__ import annotations

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    start_url: str = "https://x.com/home"
    headless: bool = False
    user_data_dir: str = "~/.feed_expander/profile"
    log_level: str = "INFO"
    mode: Literal["gated", "simple"] = "gated"

    debounce_ms: int = Field(default=300, ge=0)
    batch_size: int = Field(default=5, ge=1)
    idle_timeout_ms: int = Field(default=1000, ge=0)
    visibility_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    visibility_margin_px: int = 100
    click_delay_ms: int = Field(default=300, ge=0)
    click_stagger_ms: int = Field(default=100, ge=0)
    navigation_poll_ms: int = Field(default=500, gt=0)
    navigation_settle_ms: int = Field(default=800, ge=0)
    backup_interval_ms: int = Field(default=3000, gt=0)
    startup_delay_ms: int = Field(default=1000, ge=0)

    target_selector: str = 'button[data-testid="tweet-text-show-more-link"]'
    marker_attribute: str = "data-testid"
    marker_value: str = "tweet-text-show-more-link"
    text_phrase: str = "show more"
    container_selectors: list[str] = [
        '[data-testid="tweet"]',
        '[data-testid="tweetText"]',
        'article[role="article"]',
    ]
    max_ancestor_depth: int = Field(default=15, ge=1)


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
