"""Internal constants shared across the library."""

#: Mean Earth radius used by the great-circle distance, in meters.
EARTH_RADIUS_M = 6_371_000.0

MESH_PROTOCOL = "laban-mesh/1"

# ------------------------------------------------------------------
# Key layout in local stores and the shared medium
# ------------------------------------------------------------------

QUEUE_PREFIX = "queue/"
CACHE_PREFIX = "cache/"
MESH_PREFIX = "mesh/"

# ------------------------------------------------------------------
# Sync defaults
# ------------------------------------------------------------------

DEFAULT_CACHE_TTL_S = 24 * 3600.0
DEFAULT_OFFLINE_REFRESH_S = 30.0
DEFAULT_PROBE_INTERVAL_S = 15.0
DEFAULT_REQUEST_TIMEOUT_S = 10.0

PROVISIONAL_ID_PREFIX = "offline-"

# ------------------------------------------------------------------
# Mesh defaults (seconds / meters)
# ------------------------------------------------------------------

DEFAULT_MESH_RANGE_M = 500.0
NEARBY_RECORD_RADIUS_M = 1000.0
PRESENCE_INTERVAL_S = 5.0
DISCOVERY_INTERVAL_S = 3.0
POLL_INTERVAL_S = 2.0
PRESENCE_TTL_S = 30.0
REQUEST_TTL_S = 10.0
PUSH_TTL_S = 30.0
MAX_LOCAL_RECORDS = 200
MAX_RECEIVED_RECORDS = 1000

# ------------------------------------------------------------------
# Entity types and their remote tables
# ------------------------------------------------------------------

HELP_REQUEST = "help-request"
ROAD_REPORT = "road-report"

ENTITY_TABLES: dict[str, str] = {
    HELP_REQUEST: "help_requests",
    ROAD_REPORT: "road_reports",
}


def table_for(entity_type: str, overrides: dict[str, str] | None = None) -> str:
    """Map an entity type (``"help-request"``) to its remote table (``"help_requests"``)."""
    if overrides and entity_type in overrides:
        return overrides[entity_type]
    if entity_type in ENTITY_TABLES:
        return ENTITY_TABLES[entity_type]
    return entity_type.replace("-", "_") + "s"
