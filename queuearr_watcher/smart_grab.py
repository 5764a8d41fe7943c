"""
Smart Grab
One-shot release selection used when a user retries a failed download:
best quality first, then the healthiest swarm among the top candidates.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List

from .arr_client import Release, RadarrClient, SonarrClient
from .exceptions import BackendNotConfiguredError, ValidationError
from .persistence import DownloadSource, parse_source
from .retry import RetryHandler, is_safe_to_resend

logger = logging.getLogger(__name__)

TOP_CANDIDATES = 5

GRABBED = "grabbed"
SEARCH_TRIGGERED = "search_triggered"


@dataclass
class GrabResult:
    source: DownloadSource
    media_id: int
    action: str
    release: Optional[Release] = None
    episode_id: Optional[int] = None

    def to_dict(self) -> dict:
        release = self.release
        return {
            "source": self.source.value,
            "mediaId": self.media_id,
            "episodeId": self.episode_id,
            "action": self.action,
            "release": {
                "guid": release.guid,
                "indexerId": release.indexer_id,
                "title": release.title,
                "seeders": release.seeders,
                "score": release.score,
            } if release else None,
        }


def is_eligible(release: Release) -> bool:
    return not release.rejections and release.download_allowed is not False


def pick_best(releases: List[Release]) -> Optional[Release]:
    """
    Top five eligible releases by quality score, then the most seeded of those.

    Both sorts are stable, so ties keep the indexer's order.
    """
    eligible = [r for r in releases if is_eligible(r)]
    by_score = sorted(eligible, key=lambda r: r.score, reverse=True)[:TOP_CANDIDATES]
    by_seeders = sorted(by_score, key=lambda r: r.seeders, reverse=True)
    return by_seeders[0] if by_seeders else None


async def smart_grab(
    source,
    media_id: int,
    episode_id: Optional[int] = None,
    radarr: Optional[RadarrClient] = None,
    sonarr: Optional[SonarrClient] = None,
    retry_handler: Optional[RetryHandler] = None,
) -> GrabResult:
    """
    Grab the best release for a movie or episode.

    Falls back to the backend's own search command when nothing is eligible,
    or when a series is retried without an episode.
    """
    source = parse_source(source)
    retry_handler = retry_handler or RetryHandler()

    if source == DownloadSource.RADARR:
        if radarr is None:
            raise BackendNotConfiguredError("radarr")
        client, search_key = radarr, media_id
    else:
        if sonarr is None:
            raise BackendNotConfiguredError("sonarr")
        client, search_key = sonarr, episode_id

    target = f"{source.value}:{media_id}"

    if source == DownloadSource.SONARR and episode_id is None:
        await retry_handler.with_retry(
            lambda: sonarr.trigger_search(media_id), "series-search", target
        )
        logger.info(f"Triggered series search for {media_id}", extra={"source": source.value})
        return GrabResult(source=source, media_id=media_id, action=SEARCH_TRIGGERED)

    releases = await retry_handler.with_retry(
        lambda: client.search_releases(search_key), "releases", target
    )
    best = pick_best(releases)

    if best is None:
        logger.info(
            f"No eligible release among {len(releases)} for {target}, "
            f"falling back to backend search",
            extra={"source": source.value, "media_id": media_id},
        )
        await retry_handler.with_retry(
            (lambda: radarr.trigger_search([media_id]))
            if source == DownloadSource.RADARR
            else (lambda: sonarr.trigger_episode_search([episode_id])),
            "search",
            target,
        )
        return GrabResult(
            source=source, media_id=media_id, episode_id=episode_id, action=SEARCH_TRIGGERED
        )

    await retry_handler.with_retry(
        lambda: client.grab_release(best.guid, best.indexer_id),
        "grab",
        target,
        should_retry=is_safe_to_resend,
    )
    logger.info(
        f"Grabbed {best.title} (score {best.score}, {best.seeders} seeders)",
        extra={"source": source.value, "media_id": media_id},
    )
    return GrabResult(
        source=source, media_id=media_id, episode_id=episode_id, action=GRABBED, release=best
    )


def validate_grab_request(source, media_id, episode_id=None) -> DownloadSource:
    """Reject malformed retry requests before any backend call."""
    source = parse_source(source)
    if not isinstance(media_id, int) or isinstance(media_id, bool) or media_id <= 0:
        raise ValidationError(f"mediaId must be a positive integer, got: {media_id!r}")
    if episode_id is not None and (not isinstance(episode_id, int) or episode_id <= 0):
        raise ValidationError(f"episodeId must be a positive integer, got: {episode_id!r}")
    return source
