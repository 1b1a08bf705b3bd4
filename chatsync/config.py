import os


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chatsync.db")
    STORE_URL: str = os.getenv("STORE_URL", "http://localhost:8000")
    STORE_WS_URL: str = os.getenv("STORE_WS_URL", "ws://localhost:8000/api/v1/ws/changes")
    APP_NAME: str = "chatsync store"
    VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    ALLOWED_ORIGINS: list = ["*"]

    DELETED_MESSAGE_MARKER: str = "[[MSG_DELETED]]"
    SYSTEM_MESSAGE_PREFIX: str = "[[SYS:"
    SYSTEM_MESSAGE_SUFFIX: str = "]]"
    MESSAGE_TAIL_LIMIT: int = int(os.getenv("MESSAGE_TAIL_LIMIT", "50"))
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "10"))
    ERROR_HISTORY_SIZE: int = int(os.getenv("ERROR_HISTORY_SIZE", "100"))
    DEFAULT_NOTIFICATION_ICON: str = "/logo/light_KCS.png"

settings = Settings()
