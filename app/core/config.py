"""
Configuration settings for the application
"""

import os
from typing import List
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./party_queue.db")

    # Security
    ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "admin_token_123")
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-change-me")
    IP_SALT: str = os.getenv("IP_SALT", "default-salt")
    # Reverse proxies whose X-Forwarded-For / X-Real-IP headers are honoured ("*" trusts any peer)
    TRUSTED_PROXIES: List[str] = []

    # Application
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS
    ALLOW_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:8000",
    ]

    # Spotify
    SPOTIFY_CLIENT_ID: str = os.getenv("SPOTIFY_CLIENT_ID", "")
    SPOTIFY_CLIENT_SECRET: str = os.getenv("SPOTIFY_CLIENT_SECRET", "")
    SPOTIFY_REDIRECT_URI: str = os.getenv("SPOTIFY_REDIRECT_URI", "http://localhost:8000/spotify/callback")
    SPOTIFY_SCOPES: str = (
        "user-read-playback-state user-modify-playback-state "
        "user-read-currently-playing user-read-private"
    )
    SPOTIFY_API_URL: str = "https://api.spotify.com/v1"
    SPOTIFY_ACCOUNTS_URL: str = "https://accounts.spotify.com"
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # Reconciliation / connectivity backoff
    RECONCILE_INTERVAL_SECONDS: int = 10
    BACKOFF_BASE_SECONDS: float = 5.0
    BACKOFF_MAX_SECONDS: float = 300.0
    DISCONNECT_THRESHOLD: int = 5

    # Submission guard
    REQUESTS_PER_WINDOW: int = 10
    RATE_WINDOW_SECONDS: int = 60 * 60
    SUBMIT_COOLDOWN_SECONDS: int = 30
    DUPLICATE_WINDOW_MINUTES: int = 30

    # Request retention
    PLAYED_RETENTION_MINUTES: int = 60

    # Access credentials
    PIN_HOURS_VALID: int = 24

    # Real-time relay
    RELAY_APP_KEY: str = "party-queue"

    class Config:
        env_file = ".env"

settings = Settings()
