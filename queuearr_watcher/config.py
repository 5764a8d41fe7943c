"""
Configuration for Queuearr Watcher
Settings are read from the environment (and .env); the factories return
None for any backend that is not configured.
"""

import os
from typing import Optional

from pydantic_settings import BaseSettings

from .arr_client import RadarrClient, SonarrClient
from .notifications import HttpNotifier, LogNotifier
from .retry import RetryConfig, CircuitBreakerConfig
from .status import StallThresholds
from .transmission_client import TransmissionClient


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Radarr
    radarr_url: str = ""
    radarr_api_key: str = ""

    # Sonarr
    sonarr_url: str = ""
    sonarr_api_key: str = ""

    # Transmission
    transmission_url: str = ""
    transmission_username: Optional[str] = None
    transmission_password: Optional[str] = None

    backend_timeout: float = 10.0
    backend_verify_ssl: bool = True

    # Notification delivery endpoint (logs only when unset)
    notify_url: str = ""
    notify_token: Optional[str] = None

    # Watcher settings
    watch_enabled: bool = True
    watch_interval: float = 30.0
    bytes_stall_minutes: float = 15.0
    never_started_stall_minutes: float = 30.0
    torrent_idle_seconds: float = 30.0

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: Optional[str] = None  # X-Api-Key required on /api when set

    # Persistence settings
    config_path: str = "/config"
    state_file: str = "queuearr.db"  # Filename only, will be joined with config_path

    # Retry settings
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Circuit breaker settings
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 120.0

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def db_path(self) -> str:
        if os.path.isabs(self.state_file):
            return self.state_file
        return os.path.join(self.config_path, self.state_file)

    def stall_thresholds(self) -> StallThresholds:
        return StallThresholds(
            bytes_stall_seconds=self.bytes_stall_minutes * 60,
            never_started_seconds=self.never_started_stall_minutes * 60,
            torrent_idle_seconds=self.torrent_idle_seconds,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
        )

    def circuit_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout=self.circuit_reset_timeout,
        )


def create_radarr_client(settings: Settings) -> Optional[RadarrClient]:
    if not settings.radarr_url or not settings.radarr_api_key:
        return None
    return RadarrClient(
        settings.radarr_url,
        settings.radarr_api_key,
        timeout=settings.backend_timeout,
        verify_ssl=settings.backend_verify_ssl,
    )


def create_sonarr_client(settings: Settings) -> Optional[SonarrClient]:
    if not settings.sonarr_url or not settings.sonarr_api_key:
        return None
    return SonarrClient(
        settings.sonarr_url,
        settings.sonarr_api_key,
        timeout=settings.backend_timeout,
        verify_ssl=settings.backend_verify_ssl,
    )


def create_transmission_client(settings: Settings) -> Optional[TransmissionClient]:
    if not settings.transmission_url:
        return None
    return TransmissionClient(
        settings.transmission_url,
        username=settings.transmission_username,
        password=settings.transmission_password,
        timeout=settings.backend_timeout,
        idle_seconds=settings.torrent_idle_seconds,
    )


def create_notifier(settings: Settings):
    """HttpNotifier when a delivery URL is configured, otherwise LogNotifier."""
    if settings.notify_url:
        return HttpNotifier(
            settings.notify_url, token=settings.notify_token, timeout=settings.backend_timeout
        )
    return LogNotifier()
