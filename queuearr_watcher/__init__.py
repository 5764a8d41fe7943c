"""Download state reconciliation and notifications for Radarr, Sonarr and Transmission."""

__version__ = "1.0.0"
