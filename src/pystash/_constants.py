"""Internal constants shared across the library."""

USER_AGENT = "pystash/1.0"
REST_PREFIX = "/rest/v1"
AUTH_PREFIX = "/auth/v1"

#: Reserved prefix of locally synthesized (not yet persisted) entity ids.
TEMP_ID_PREFIX = "temp-"
#: Placeholder ``user_id`` written on temporary entities.
TEMP_USER_ID = "temp-user"

# PostgreSQL / PostgREST error codes
UNIQUE_VIOLATION_CODE = "23505"
NO_ROWS_CODE = "PGRST116"
JWT_EXPIRED_CODES: frozenset[str] = frozenset({"PGRST301", "PGRST302"})
# Integrity-constraint classes surfaced as validation failures.
VALIDATION_CODE_PREFIXES: tuple[str, ...] = ("22", "23", "PGRST1", "PGRST2")

DEFAULT_STALE_TIME: float = 5 * 60
DEFAULT_FETCH_RETRIES: int = 3
DEFAULT_FETCH_RETRY_DELAY: float = 1.0
DEFAULT_FETCH_RETRY_MAX_DELAY: float = 30.0
