"""Application configuration and environment settings"""
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class PlatformSettings(BaseModel):
    """Streaming platform API settings"""
    spotify_api_url: str = Field(..., description="Spotify Web API base URL")
    spotify_market: str = Field(..., description="Market used for playback lookups")
    audius_api_url: str = Field(..., description="Audius API base URL")
    timeout_seconds: float = Field(..., description="Per-call timeout for playback checks")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Database
    DATABASE_URL: Optional[str] = Field(None, description="Full database URL, overrides the DB_* settings")
    ENVIRONMENT: str = Field("local", description="Deployment profile: local, staging or production")
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: str = Field("5432", description="Database port")
    DB_NAME: str = Field("raids", description="Database name")
    DB_USER: str = Field("raids", description="Database user")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password")
    DB_SSL_MODE: str = Field("disable", description="libpq sslmode")

    # Streaming platforms
    SPOTIFY_API_URL: str = Field("https://api.spotify.com/v1", description="Spotify Web API base URL")
    SPOTIFY_MARKET: str = Field("US", description="Market passed to the player endpoint")
    AUDIUS_API_URL: str = Field("https://api.audius.co/v1", description="Audius API base URL")
    VERIFIER_TIMEOUT_SECONDS: float = Field(5.0, description="Timeout for a single playback check")

    # Scheduling
    TICK_INTERVAL_SECONDS: float = Field(3.0, description="Seconds between scheduler ticks")
    MAX_WORKERS: int = Field(8, description="Upper bound on concurrent session evaluations")
    IDLE_SESSION_TIMEOUT_SECONDS: int = Field(300, description="Drop sessions idle this long (0 disables)")
    DEFAULT_REQUIRED_LISTEN_SECONDS: int = Field(30, description="Listen time used when a raid sets none")

    # Settlement
    SETTLEMENT_API_URL: str = Field("http://localhost:8080", description="Settlement service base URL")
    SETTLEMENT_API_KEY: Optional[str] = Field(None, description="API key for the settlement service")
    SETTLEMENT_TIMEOUT_SECONDS: float = Field(15.0, description="Timeout for settlement requests")

    # Notifications and cleanup
    NOTIFICATION_MIN_INTERVAL_SECONDS: float = Field(2.0, description="Minimum gap between progress messages")
    INACTIVE_PARTICIPANT_SECONDS: int = Field(60, description="Age after which idle joiners are cleaned up")

    LOG_LEVEL: str = Field("INFO", description="Root log level")

    @property
    def platform_settings(self) -> PlatformSettings:
        """Get platform settings as a separate model"""
        return PlatformSettings(
            spotify_api_url=self.SPOTIFY_API_URL,
            spotify_market=self.SPOTIFY_MARKET,
            audius_api_url=self.AUDIUS_API_URL,
            timeout_seconds=self.VERIFIER_TIMEOUT_SECONDS
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True
    )

settings = Settings()

# Keys never written to logs
SECRET_SETTINGS = {'DB_PASSWORD', 'SETTLEMENT_API_KEY', 'DATABASE_URL'}
