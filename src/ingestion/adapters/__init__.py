"""Activity provider adapters for Waypoint.

Each adapter implements the ProviderAdapter ABC and handles:
- The provider's REST surface (API base, OAuth endpoints, list/detail/photo paths)
- Listing parameters and record timestamps used for pagination and cursors
- Interpreting the provider's rate-limit headers on a 429
- Normalizing provider JSON into canonical Waypoint records

Available adapters:
    StravaAdapter — Strava API v3 (OAuth2)
"""

from src.ingestion.adapters.strava import StravaAdapter
from src.ingestion.base import ProviderAdapter

__all__ = [
    "StravaAdapter",
]

# Registry: source_id → adapter class
ADAPTER_REGISTRY: dict[str, type[ProviderAdapter]] = {
    "strava": StravaAdapter,
}


def get_adapter(source_id: str) -> type[ProviderAdapter]:
    """Return the adapter class for a given source slug.

    Args:
        source_id: e.g. 'strava'

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[source_id]
