# src/session_gateway/config.py

from pathlib import Path

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Determine the base directory of this config file
# .env is at the service root, two levels up from src/session_gateway/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"SessionGateway: Successfully loaded .env file from: {ENV_FILE_PATH}")
else:
    print(
        f"SessionGateway: Warning: .env file not found at {ENV_FILE_PATH}. Relying on environment variables."
    )


class Settings(BaseSettings):
    # === Token signing ===
    GATEWAY_JWT_SECRET: str
    GATEWAY_JWT_ALGORITHM: str = "HS256"
    GATEWAY_ISSUER: str = "clinic-portal-session-gateway"

    # === Token lifetimes ===
    ACCESS_TOKEN_EXPIRY_SECONDS: int = 15 * 60
    REFRESH_TOKEN_EXPIRY_SECONDS: int = 7 * 24 * 60 * 60

    # === Rate limiting for /refresh ===
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 30

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_lifetimes(self) -> 'Settings':
        if self.ACCESS_TOKEN_EXPIRY_SECONDS <= 0 or self.REFRESH_TOKEN_EXPIRY_SECONDS <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.REFRESH_TOKEN_EXPIRY_SECONDS < self.ACCESS_TOKEN_EXPIRY_SECONDS:
            raise ValueError("REFRESH_TOKEN_EXPIRY_SECONDS must not be shorter than ACCESS_TOKEN_EXPIRY_SECONDS.")
        return self


try:
    settings = Settings()
except Exception as e:
    print(f"SessionGateway: Error instantiating Settings: {e}")
    raise
