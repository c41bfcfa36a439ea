from __future__ import annotations

DOMAIN = "novel_sync"

CREDENTIAL_STORAGE_KEY = "novel_sync.credential"
DATA_STORAGE_KEY = "novel_sync.data"
STORAGE_VERSION = 1

DEFAULT_BUNDLE_FILE_NAME = "novel-writer-data.json"
DEFAULT_ENTITY_FILE_PREFIX = "novel-"
JSON_MIME_TYPE = "application/json"
MULTIPART_BOUNDARY = "-------314159265358979323846"

DEFAULT_API_BASE_URL = "https://www.googleapis.com"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_SCOPE = "https://www.googleapis.com/auth/drive.file"

DEFAULT_DEBOUNCE_SECONDS = 0.1
DEFAULT_SYNC_INTERVAL = 60 * 60
MIN_SYNC_INTERVAL = 60
DEFAULT_DAILY_LIMIT = 1000
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_TOKEN_REFRESH_THRESHOLD = 300
RATE_WINDOW_SECONDS = 24 * 60 * 60

CONF_CLIENT_ID = "client_id"
CONF_CLIENT_SECRET = "client_secret"
CONF_SCOPE = "scope"
CONF_API_BASE_URL = "api_base_url"
CONF_TOKEN_URL = "token_url"
CONF_BUNDLE_FILE_NAME = "bundle_file_name"
CONF_ENTITY_FILE_PREFIX = "entity_file_prefix"
CONF_DEBOUNCE_SECONDS = "debounce_seconds"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_DAILY_LIMIT = "daily_limit"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_TOKEN_REFRESH_THRESHOLD = "token_refresh_threshold"

# Keys managed by the sync layer; partial updates may not overwrite them.
PROTECTED_ENTITY_KEYS = frozenset({"id", "version", "updatedAt", "lastSyncAt", "isSyncing"})

DEFAULT_SETTINGS: dict[str, object] = {
    "fontSize": "medium",
    "wordCountDisplay": True,
    "lineNumbers": False,
}
