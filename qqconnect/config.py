"""
QQ Connect login configuration. App credentials come from env; no secrets in this file.
"""
import os

# App id / app key issued by QQ Connect (connect.qq.com)
APP_ID = os.environ.get("QQCONNECT_APP_ID", "test-app-id")
APP_KEY = os.environ.get("QQCONNECT_APP_KEY", "")

# get_user_info is the only scope needed for login; comma-separated per QQ Connect
DEFAULT_SCOPE = os.environ.get("QQCONNECT_SCOPE", "get_user_info")

# Provider endpoints (graph.qq.com). Overridable for staging or a local fake provider.
AUTHORIZATION_ENDPOINT = os.environ.get("QQCONNECT_AUTHORIZATION_ENDPOINT", "https://graph.qq.com/oauth2.0/authorize")
TOKEN_ENDPOINT = os.environ.get("QQCONNECT_TOKEN_ENDPOINT", "https://graph.qq.com/oauth2.0/token")
OPENID_ENDPOINT = os.environ.get("QQCONNECT_OPENID_ENDPOINT", "https://graph.qq.com/oauth2.0/me")
USER_INFO_ENDPOINT = os.environ.get("QQCONNECT_USER_INFO_ENDPOINT", "https://graph.qq.com/user/get_user_info")

# Callback path registered with QQ Connect; redirect_uri = scheme + host + path base + this
CALLBACK_PATH = os.environ.get("QQCONNECT_CALLBACK_PATH", "/signin-qqconnect")

# Label on identities built by this flow, and the label the host signs in as
AUTHENTICATION_TYPE = os.environ.get("QQCONNECT_AUTHENTICATION_TYPE", "QQConnect")
SIGN_IN_AS = os.environ.get("QQCONNECT_SIGN_IN_AS", "Cookies")

# Timeout (seconds) for each provider call
HTTP_TIMEOUT = float(os.environ.get("QQCONNECT_HTTP_TIMEOUT", "10"))

# Lifetime of the encoded state and the correlation cookie (user has 10 min to log in at QQ)
STATE_TTL = int(os.environ.get("QQCONNECT_STATE_TTL", "600"))

# Fernet key for the state parameter. QQCONNECT_STATE_KEY wins; else loaded from (or generated into) the file.
STATE_KEY = os.environ.get("QQCONNECT_STATE_KEY", "").strip() or None
STATE_KEY_PATH = os.environ.get("QQCONNECT_STATE_KEY_PATH", ".qqconnect_state_key")
# Optional previous key for rotation: still accepted for decoding, never used to encode.
STATE_KEY_PREVIOUS_PATH = os.environ.get("QQCONNECT_STATE_KEY_PREVIOUS_PATH", "").strip() or None

# Audit log database (SQLite acceptable for a single node)
DATABASE_URL = os.environ.get("QQCONNECT_DATABASE_URL", "sqlite:///./qqconnect.db")
