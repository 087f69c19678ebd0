import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()

class Settings:
    # Homeserver the account lives on
    HOMESERVER_URL: str = os.getenv("HOMESERVER_URL", "https://matrix.org")
    MATRIX_USER_ID: str = os.getenv("MATRIX_USER_ID", "")
    MATRIX_ACCESS_TOKEN: str = os.getenv("MATRIX_ACCESS_TOKEN", "")

    # Identity server configured at startup (empty = use persisted or none)
    IDENTITY_SERVER_URL: str = os.getenv("IDENTITY_SERVER_URL", "")
    IDENTITY_HTTP_TIMEOUT: float = float(os.getenv("IDENTITY_HTTP_TIMEOUT", "10"))

    # Pending binding sessions expire after a day
    IDENTITY_BINDING_TTL: int = int(os.getenv("IDENTITY_BINDING_TTL", str(24 * 60 * 60)))

    # "memory" or "redis"
    IDENTITY_STORE: str = os.getenv("IDENTITY_STORE", "memory")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    ALLOWED_ORIGINS: str = os.getenv("ALLOWED_ORIGINS", "")

settings = Settings()
