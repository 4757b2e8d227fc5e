"""
Domain constants for the chat core.

Centralizes limits, windows and pagination values used across services.
"""

# Message lifecycle
MESSAGE_EDIT_WINDOW_HOURS = 24
MESSAGE_MAX_LENGTH = 2000

# Group settings
GROUP_NAME_MAX_LENGTH = 100
GROUP_DESCRIPTION_MAX_LENGTH = 500

# Pagination defaults (every list operation is clamped to MAX_PAGE_SIZE)
DEFAULT_PAGE_SIZE = 20
MESSAGES_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

# Optimistic concurrency: re-read and retry a lost compare-and-swap this many times
MAX_CAS_RETRIES = 3

# Postgres error codes surfaced through PostgREST
UNIQUE_VIOLATION_CODE = "23505"

# Raised by leave_group_conversation() when the caller's snapshot is stale
STALE_MEMBERSHIP_MARKER = "STALE_MEMBERSHIP"

# Columns returned for display lookups
USER_PROFILE_FIELDS = "id, username, first_name, last_name, is_active"
