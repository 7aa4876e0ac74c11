"""Constants module for mediafetch.

Default lifetimes, cache identifiers and content types shared by the
remote client, the TTL cache registry and the disk image cache.
"""

from typing import Dict, FrozenSet, Tuple

# API response cache defaults (seconds)
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_ROLLING_BUFFER_SECONDS = 10.0
DEFAULT_CACHE_CHECK_PERIOD_SECONDS = 120

# Image cache defaults
DEFAULT_IMAGE_MAX_AGE_SECONDS = 86400
DEFAULT_IMAGE_CACHE_VERSION = 1
IMAGE_RECORD_FILENAME = "record.json"
IMAGE_TEMP_PREFIX = ".tmp-"
# Key directories with no payload or record are left alone this long after
# their last change, so a write that has only created the directory survives.
IMAGE_WRITE_GRACE_SECONDS = 60

# Rate limiting
DEFAULT_RATE_LIMIT_WINDOW_MS = 1000

DEFAULT_REQUEST_HEADERS: Dict[str, str] = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

JSON_CONTENT_TYPES: FrozenSet[str] = frozenset({"application/json"})

TEXT_CONTENT_TYPES: FrozenSet[str] = frozenset(
    {
        "application/xml",
        "text/xml",
        "text/html",
        "text/plain",
    }
)

# (id, display name) for the API caches every deployment registers
DEFAULT_API_CACHES: Tuple[Tuple[str, str], ...] = (
    ("tmdb", "TMDB API"),
    ("radarr", "Radarr API"),
    ("sonarr", "Sonarr API"),
    ("lidarr", "Lidarr API"),
    ("rt", "Rotten Tomatoes API"),
    ("imdb", "IMDB API"),
    ("github", "GitHub API"),
    ("tvdb", "TheTVDB API"),
    ("musicbrainz", "MusicBrainz API"),
    ("listenbrainz", "ListenBrainz API"),
    ("covertartarchive", "Cover Art Archive API"),
    ("oidc", "OpenID Connect"),
)
