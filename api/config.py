"""
Unified Configuration Module for the Map Scraper service

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    DEBUG: bool = _env_bool("DEBUG", "false")

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ])
    CORS_ALLOW_CREDENTIALS: bool = True

    # === Paths ===
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/scraper.db")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # === Worker Pools ===
    QUEUE_WORKER_ENABLED: bool = _env_bool("QUEUE_WORKER_ENABLED", "true")
    SCRAPE_CONCURRENCY: int = int(os.getenv("SCRAPE_CONCURRENCY", "1"))
    ENRICH_CONCURRENCY: int = int(os.getenv("ENRICH_CONCURRENCY", "5"))
    SCRAPE_MAX_ATTEMPTS: int = int(os.getenv("SCRAPE_MAX_ATTEMPTS", "3"))
    ENRICH_MAX_ATTEMPTS: int = int(os.getenv("ENRICH_MAX_ATTEMPTS", "1"))

    # === Browser Sessions ===
    BROWSER_HEADLESS: bool = _env_bool("BROWSER_HEADLESS", "true")
    NAVIGATION_TIMEOUT_MS: int = int(os.getenv("NAVIGATION_TIMEOUT_MS", "60000"))
    LANDMARK_TIMEOUT_MS: int = int(os.getenv("LANDMARK_TIMEOUT_MS", "10000"))
    MAX_SCROLL_ATTEMPTS: int = int(os.getenv("MAX_SCROLL_ATTEMPTS", "10"))
    SESSION_ROTATE_RECORDS: int = int(os.getenv("SESSION_ROTATE_RECORDS", "400"))
    SESSION_ROTATE_MINUTES: float = float(os.getenv("SESSION_ROTATE_MINUTES", "45"))
    ENRICH_MAX_CONTACT_PAGES: int = int(os.getenv("ENRICH_MAX_CONTACT_PAGES", "2"))

    # === Job Defaults ===
    MILESTONE_EVERY: int = int(os.getenv("MILESTONE_EVERY", "500"))
    DEFAULT_RESULT_CAP: int = int(os.getenv("DEFAULT_RESULT_CAP", "500"))
    DEFAULT_MIN_DELAY_MS: int = int(os.getenv("DEFAULT_MIN_DELAY_MS", "2000"))
    DEFAULT_MAX_DELAY_MS: int = int(os.getenv("DEFAULT_MAX_DELAY_MS", "4000"))
    DEFAULT_REST_EVERY: int = int(os.getenv("DEFAULT_REST_EVERY", "50"))
    DEFAULT_REST_DURATION_MS: int = int(os.getenv("DEFAULT_REST_DURATION_MS", "60000"))
    DEFAULT_FIELDS: List[str] = field(default_factory=lambda: [
        f.strip() for f in
        os.getenv("DEFAULT_FIELDS", "phone,rating,city,businessInfo,coordinates").split(",")
        if f.strip()
    ])

    # === Live Progress ===
    SSE_KEEPALIVE_SECONDS: float = float(os.getenv("SSE_KEEPALIVE_SECONDS", "30"))
    EVENT_QUEUE_SIZE: int = int(os.getenv("EVENT_QUEUE_SIZE", "100"))

    # === Notifications ===
    DISCORD_WEBHOOK_URL: Optional[str] = os.getenv("DISCORD_WEBHOOK_URL")
    SLACK_WEBHOOK_URL: Optional[str] = os.getenv("SLACK_WEBHOOK_URL")

    # === Geocoding ===
    GEOCODER_URL: str = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/search")
    GEOCODER_USER_AGENT: str = os.getenv("GEOCODER_USER_AGENT", "MapScraper/1.0")

    def validate(self) -> List[str]:
        """Validate configuration and return a list of problems."""
        problems = []

        if self.SCRAPE_CONCURRENCY < 1:
            problems.append("SCRAPE_CONCURRENCY must be >= 1")
        if self.ENRICH_CONCURRENCY < 1:
            problems.append("ENRICH_CONCURRENCY must be >= 1")
        if self.DEFAULT_MIN_DELAY_MS > self.DEFAULT_MAX_DELAY_MS:
            problems.append("DEFAULT_MIN_DELAY_MS must not exceed DEFAULT_MAX_DELAY_MS")
        if self.SESSION_ROTATE_RECORDS < 1:
            problems.append("SESSION_ROTATE_RECORDS must be >= 1")
        if self.MILESTONE_EVERY < 1:
            problems.append("MILESTONE_EVERY must be >= 1")

        return problems


# Global config instance
config = AppConfig()
