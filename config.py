import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Record store settings
    store_backend: str = os.getenv("STORE_BACKEND", "sqlite")  # sqlite | firestore
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    firestore_project_id: Optional[str] = os.getenv("FIRESTORE_PROJECT_ID")
    firestore_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "10"))

    # Identity settings
    firebase_api_key: Optional[str] = os.getenv("FIREBASE_API_KEY")
    default_user_id: Optional[str] = os.getenv("DEFAULT_USER_ID", "local")
    default_user_name: str = os.getenv("DEFAULT_USER_NAME", "Librarian")
    default_user_email: Optional[str] = os.getenv("DEFAULT_USER_EMAIL")
    require_verified_email: bool = _env_flag("REQUIRE_VERIFIED_EMAIL", "False")

    # Form rules
    require_category: bool = _env_flag("REQUIRE_CATEGORY", "True")
    default_categories: list = field(default_factory=lambda: ["Fiction", "Non-Fiction", "Science", "History"])

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "500"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
