# Configuration subcodes
CONFIG_TEMPLATE_MISSING = "config_template_missing"
CONFIG_TEMPLATE_ARITY = "config_template_arity"
CONFIG_UNKNOWN_DIALECT = "config_unknown_dialect"
CONFIG_UNSUPPORTED_HASH = "config_unsupported_hash"
CONFIG_BAD_URL = "config_bad_url"
CONFIG_BACKEND_UNUSABLE = "config_backend_unusable"
CONFIG_BAD_VALUE = "config_bad_value"
CONFIG_NOT_CONFIGURED = "config_not_configured"

# Connection subcodes
CONNECTION_POOL_EXHAUSTED = "connection_pool_exhausted"
CONNECTION_UNREACHABLE = "connection_unreachable"
CONNECTION_PROVIDER_CLOSED = "connection_provider_closed"

# Row mapping subcodes
ROW_MISSING_ID = "row_missing_id"
ROW_MISSING_USERNAME = "row_missing_username"

# Sync subcodes
SYNC_MISSING_USERNAME = "sync_missing_username"
SYNC_CREATE_FAILED = "sync_create_failed"
SYNC_UPDATE_FAILED = "sync_update_failed"

# Unlink subcodes
UNLINK_DISABLED = "unlink_disabled"
UNLINK_USER_NOT_FOUND = "unlink_user_not_found"
UNLINK_USER_NOT_FEDERATED = "unlink_user_not_federated"
