import os
import uuid
from dotenv import load_dotenv

load_dotenv()

class Settings:
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Storage: "redis" shares state across processes, "memory" keeps it in-process
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "redis").lower()
    STORAGE_KEY_PREFIX: str = os.getenv("STORAGE_KEY_PREFIX", "hme:")
    PHASE_STORAGE_KEY: str = os.getenv("PHASE_STORAGE_KEY", "popupState")
    SESSION_STORAGE_KEY: str = os.getenv("SESSION_STORAGE_KEY", "iCloudHmeClientSession")
    STORAGE_CHANGES_CHANNEL: str = os.getenv("STORAGE_CHANGES_CHANNEL", "hme:storage:changes")

    # Writer identity stamped on every persisted value; change events from
    # our own writer are not echoed back to us.
    SURFACE_ID: str = os.getenv("SURFACE_ID", "") or uuid.uuid4().hex[:12]

    # iCloud endpoints
    ICLOUD_SETUP_URL: str = os.getenv("ICLOUD_SETUP_URL", "https://setup.icloud.com/setup/ws/1").rstrip("/")
    ICLOUD_AUTH_URL: str = os.getenv("ICLOUD_AUTH_URL", "https://idmsa.apple.com/appleauth/auth").rstrip("/")
    ICLOUD_ORIGIN: str = os.getenv("ICLOUD_ORIGIN", "https://www.icloud.com").rstrip("/")
    ICLOUD_WIDGET_KEY: str = os.getenv(
        "ICLOUD_WIDGET_KEY",
        "d39ba9916b7251055b22c7f910e2ea796ee65e98b2ddecea8f5dde8d9d1a815d",
    )
    HTTP_TIMEOUT_SEC: float = float(os.getenv("HTTP_TIMEOUT_SEC", "10"))

    # Logout flags forwarded to setup/logout
    TRUST_BROWSER_ON_LOGOUT: bool = os.getenv("TRUST_BROWSER_ON_LOGOUT", "false").lower() == "true"

    # Background sign-in component
    SIGNIN_SERVICE_URL: str = os.getenv("SIGNIN_SERVICE_URL", "http://localhost:8000").rstrip("/")
    # Optional: when set, /auth/signin requires a matching x-api-key header
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "")

    # Security & Privacy
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"

settings = Settings()
