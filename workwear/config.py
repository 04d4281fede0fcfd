"""Runtime configuration, read from environment variables."""
import os


def _database_url() -> str:
    url = os.getenv("DATABASE_URL", "sqlite:///./workwear.db")
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Settings:
    """Settings for one process. Values are fixed at construction time."""

    def __init__(self):
        self.database_url = _database_url()
        # How long a receipt confirmation link stays valid
        self.confirmation_ttl_days = int(os.getenv("CONFIRMATION_TTL_DAYS", "7"))
        # Window in which staff may print a provisional bulk-issue protocol
        self.provisional_protocol_window_minutes = int(
            os.getenv("PROVISIONAL_PROTOCOL_WINDOW_MINUTES", "15")
        )
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]


settings = Settings()
