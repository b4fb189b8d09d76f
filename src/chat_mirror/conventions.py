"""chat-mirror Conventions - IMMUTABLE

Canonical names and markers that the client, the engine and the host
application agree on. These values are NOT configurable.

Things that CAN be configured (via config.yaml / env):
- app id, user identity, base URL
- poll interval, request timeout

Things that CANNOT be configured (defined HERE):
- the optimistic unique_id prefix
- attachment delimiters
- event names
- directory and file names under CHAT_HOME
"""

# --- The Root ---
CHAT_HOME = "~/.chat-mirror"
CONFIG_FILENAME = "config.yaml"  # non-secret settings, `chat:` section
KEYS_FILENAME = "keys.yaml"  # secrets (user key)

# --- Optimistic sends ---
UNIQUE_ID_PREFIX = "bq"

# --- Attachments ---
ATTACHMENT_OPEN = "[file]"
ATTACHMENT_CLOSE = "[/file]"
IMAGE_EXTENSIONS = ("jpg", "gif", "png")

# --- Events ---
EVENT_NEW_MESSAGES = "new_messages"
EVENT_LOGIN_SUCCESS = "login_success"

# --- Remote service ---
DEFAULT_HOST_TEMPLATE = "https://{app_id}.qiscus.com"
DEFAULT_POLL_INTERVAL = 5  # seconds
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
