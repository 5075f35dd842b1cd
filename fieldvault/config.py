"""
Configuration management using Pydantic Settings.
Loads configuration from environment variables and .env file.
"""
from typing import List, Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fieldvault.exceptions import ConfigError


REQUIRED_SETTINGS = (
    "CONNECTION",
    "DATABASE",
    "COLLECTION",
    "KEY_DB",
    "KEY_COLLECTION",
    "KMS_PROVIDER",
    "KEY_ALT_NAME",
    "MASTER_KEY_FILE",
    "MONGO_CRYPTD_PATH",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB Configuration
    CONNECTION: str  # Connection string, e.g. mongodb://localhost:27017
    DATABASE: str
    COLLECTION: str

    # Key Vault Configuration
    KEY_DB: str
    KEY_COLLECTION: str
    KEY_ALT_NAME: str

    # KMS Configuration
    KMS_PROVIDER: str  # Options: local, aws, azure, gcp
    MASTER_KEY_FILE: str  # 96-byte key file for the local provider

    # Crypto Companion Agent Configuration
    MONGO_CRYPTD_PATH: str
    MONGO_CRYPTD_URI: str = "mongodb://localhost:27020"
    MONGO_CRYPTD_SPAWN_ARGS: str = "--idleShutdownTimeoutSecs=60"  # Space separated
    CRYPT_SHARED_LIB_PATH: Optional[str] = None  # Used instead of mongocryptd when set

    # Client Timeouts
    SERVER_SELECTION_TIMEOUT_MS: int = 5000
    CONNECT_TIMEOUT_MS: int = 5000
    SOCKET_TIMEOUT_MS: int = 10000

    # AWS KMS Configuration (KMS_PROVIDER=aws)
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None
    AWS_KMS_REGION: Optional[str] = None
    AWS_KMS_KEY_ARN: Optional[str] = None
    AWS_KMS_ENDPOINT: Optional[str] = None

    # Azure Key Vault Configuration (KMS_PROVIDER=azure)
    AZURE_TENANT_ID: Optional[str] = None
    AZURE_CLIENT_ID: Optional[str] = None
    AZURE_CLIENT_SECRET: Optional[str] = None
    AZURE_KEY_VAULT_ENDPOINT: Optional[str] = None
    AZURE_KEY_NAME: Optional[str] = None
    AZURE_KEY_VERSION: Optional[str] = None

    # GCP KMS Configuration (KMS_PROVIDER=gcp)
    GCP_EMAIL: Optional[str] = None
    GCP_PRIVATE_KEY: Optional[str] = None
    GCP_PROJECT_ID: Optional[str] = None
    GCP_LOCATION: Optional[str] = None
    GCP_KEY_RING: Optional[str] = None
    GCP_KEY_NAME: Optional[str] = None
    GCP_KEY_VERSION: Optional[str] = None

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    APP_LOG_LEVEL: Optional[str] = None
    PYMONGO_LOG_LEVEL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator(*REQUIRED_SETTINGS)
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("KMS_PROVIDER")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.lower()

    @property
    def key_vault_namespace(self) -> str:
        """Key vault namespace in "<db>.<collection>" form."""
        return f"{self.KEY_DB}.{self.KEY_COLLECTION}"

    @property
    def namespace(self) -> str:
        """Namespace of the collection holding protected documents."""
        return f"{self.DATABASE}.{self.COLLECTION}"

    @property
    def mongocryptd_spawn_args(self) -> List[str]:
        """Parse mongocryptd spawn arguments from a space separated string."""
        return self.MONGO_CRYPTD_SPAWN_ARGS.split()


def load_settings(**overrides) -> Settings:
    """
    Load settings, failing with ConfigError before any database operation.

    Args:
        **overrides: Values that take precedence over the environment
            (``_env_file=None`` disables the .env file)

    Returns:
        Validated Settings

    Raises:
        ConfigError: If any required value is absent or empty
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})
        raise ConfigError(
            f"Invalid configuration: {', '.join(fields) or 'unknown'}"
        ) from e
