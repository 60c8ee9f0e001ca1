# src/portal_bff/config.py

from pathlib import Path
from typing import Any, List, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Determine the base directory of this config file
# .env is at the service root, two levels up from src/portal_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"PortalBFF: Successfully loaded .env file from: {ENV_FILE_PATH}")
else:
    print(
        f"PortalBFF: Warning: .env file not found at {ENV_FILE_PATH}. Relying on environment variables."
    )

DEFAULT_PUBLIC_PATHS = ["/login", "/register", "/", "/forgot-password", "/reset-password"]


class Settings(BaseSettings):
    # === Session Gateway ===
    SESSION_GATEWAY_BASE_URL: AnyHttpUrl = "http://localhost:8001/"
    GATEWAY_VERIFY_TLS: bool = True
    REFRESH_TIMEOUT_SECONDS: float = 10.0

    # === Token lifecycle ===
    REFRESH_THRESHOLD_MS: int = 2 * 60 * 1000  # Refresh tokens 2 minutes before expiry
    DEFAULT_ACCESS_TOKEN_TTL_MS: int = 15 * 60 * 1000
    REDIRECT_THROTTLE_MS: int = 5000
    SESSION_MAX_INACTIVITY_MS: int = 30 * 60 * 1000  # Idle sessions end after 30 minutes

    # === Navigation ===
    LOGIN_PATH: str = "/login"
    DEFAULT_RETURN_PATH: str = "/admin/dashboard"
    # Allow Pydantic to initially see this as a string from the env,
    # then our validator will convert it to List[str]
    PUBLIC_PATHS: Union[str, List[str]] = DEFAULT_PUBLIC_PATHS
    NAVIGATION_HISTORY_LIMIT: int = 20
    NAVIGATION_HISTORY_WINDOW_MS: int = 60 * 1000

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @property
    def REFRESH_ENDPOINT(self) -> str:
        return f"{str(self.SESSION_GATEWAY_BASE_URL).rstrip('/')}/refresh"

    @property
    def VERIFY_ENDPOINT(self) -> str:
        return f"{str(self.SESSION_GATEWAY_BASE_URL).rstrip('/')}/verify-token"

    @field_validator("PUBLIC_PATHS", mode='before')
    @classmethod
    def parse_comma_separated_paths(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [path.strip() for path in v.split(',') if path.strip()]
        if isinstance(v, list):
            return v
        raise TypeError('PUBLIC_PATHS: Expected a comma-separated string or a list.')

    @model_validator(mode='after')
    def check_final_paths_type(self) -> 'Settings':
        if not isinstance(self.PUBLIC_PATHS, list):
            raise ValueError(f"PUBLIC_PATHS ended up as {type(self.PUBLIC_PATHS)}, expected list.")
        if not all(isinstance(item, str) and item.startswith("/") for item in self.PUBLIC_PATHS):
            raise ValueError("All items in PUBLIC_PATHS must be absolute paths.")
        if self.REFRESH_TIMEOUT_SECONDS <= 0:
            raise ValueError("REFRESH_TIMEOUT_SECONDS must be positive.")
        if self.SESSION_MAX_INACTIVITY_MS <= 0:
            raise ValueError("SESSION_MAX_INACTIVITY_MS must be positive.")
        return self


try:
    settings = Settings()
    print(f"PortalBFF Session Gateway: {settings.SESSION_GATEWAY_BASE_URL}")
    print(f"PortalBFF Public paths: {settings.PUBLIC_PATHS}")
except Exception as e:
    print(f"PortalBFF: Error instantiating Settings: {e}")
    import traceback
    traceback.print_exc()
    raise
