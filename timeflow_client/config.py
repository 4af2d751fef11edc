"""
Configuration for the TimeFlow client.
"""
import os

# Base URL of the TimeFlow API (without the /api/v1 prefix)
SERVER_URL = os.getenv("TIMEFLOW_SERVER_URL", "http://localhost:8000").rstrip("/")
API_PREFIX = os.getenv("TIMEFLOW_API_PREFIX", "/api/v1")

# Bearer token; `timeflow login` stores one in the local store instead
SERVER_AUTH_TOKEN = os.getenv("TIMEFLOW_AUTH_TOKEN", "")

# Timeout for every request to the server, in seconds
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", 10))

# Path to the local SQLite database holding the session snapshot, sync queue and preferences
LOCAL_STORE_DB_PATH = os.getenv("LOCAL_STORE_DB_PATH", "timeflow_client.sqlite")

# How often the live clock recomputes elapsed time, in seconds
CLOCK_TICK_SECONDS = float(os.getenv("CLOCK_TICK_SECONDS", 1))

# How often network reachability is probed, in seconds. Probing never triggers a sync.
NETWORK_PROBE_INTERVAL_SECONDS = int(os.getenv("NETWORK_PROBE_INTERVAL_SECONDS", 30))

# Local storage keys
STORAGE_KEY_SESSION = "timeflow_current_session"
STORAGE_KEY_SYNC_QUEUE = "timeflow_sync_queue"
STORAGE_KEY_FORCED_OFFLINE = "timeflow_forced_offline"
STORAGE_KEY_ACTIVITIES = "timeflow_activities"
STORAGE_KEY_AUTH_TOKEN = "timeflow_auth_token"

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # Empty to log to console only
