import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Backend service
    backend_url: str = os.getenv("LIBREEZE_BACKEND_URL", "http://localhost:54321")
    backend_anon_key: str = os.getenv("LIBREEZE_BACKEND_ANON_KEY", "")
    storage_bucket: str = os.getenv("LIBREEZE_STORAGE_BUCKET", "libreeze")
    http_timeout: float = float(os.getenv("LIBREEZE_HTTP_TIMEOUT", "10"))

    # Where this client is reachable; used for the e-mail confirmation link
    site_url: str = os.getenv("LIBREEZE_SITE_URL", "http://127.0.0.1:8000")

    # Web service
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Session persistence
    session_file: Optional[str] = os.getenv(
        "LIBREEZE_SESSION_FILE",
        str(Path.home() / ".libreeze" / "session.json"),
    )
    persist_session: bool = _env_flag("LIBREEZE_PERSIST_SESSION", "True")

    # Application
    app_name: str = os.getenv("APP_NAME", "Libreeze")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
