"""Database configuration and credentials management"""
from dataclasses import dataclass

from raid_engine.config import Settings, settings

# Profile defaults; host and credentials for deployed profiles come from settings
LOCAL_CONFIG = {
    'HOST': 'localhost',
    'PORT': '5432',
    'NAME': 'raids',
    'USER': 'raids',
    'SSL_MODE': 'disable'
}

DEPLOYED_SSL_MODE = 'require'

def determine_environment_config(config: Settings = settings) -> dict:
    """Determine database configuration based on ENVIRONMENT."""
    if config.ENVIRONMENT == 'local':
        return {
            **LOCAL_CONFIG,
            'HOST': config.DB_HOST or LOCAL_CONFIG['HOST'],
            'PORT': config.DB_PORT or LOCAL_CONFIG['PORT'],
        }
    elif config.ENVIRONMENT in ('staging', 'production'):
        return {
            'HOST': config.DB_HOST,
            'PORT': config.DB_PORT,
            'NAME': config.DB_NAME,
            'USER': config.DB_USER,
            # sslmode is never weaker than require outside local
            'SSL_MODE': config.DB_SSL_MODE if config.DB_SSL_MODE in ('require', 'verify-ca', 'verify-full') else DEPLOYED_SSL_MODE
        }
    else:
        raise ValueError(f"Invalid ENVIRONMENT {config.ENVIRONMENT}. Must be local, staging or production")

@dataclass
class DatabaseCredentials:
    """Database credentials container with validation"""
    host: str
    port: str
    name: str
    user: str
    password: str
    ssl_mode: str = 'require'

    def to_connection_string(self) -> str:
        """Generate database connection string"""
        auth = f"{self.user}:{self.password}" if self.password else self.user
        return (
            f"postgresql://{auth}@{self.host}:{self.port}/"
            f"{self.name}?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_config(cls, db_config: dict, password: str) -> 'DatabaseCredentials':
        """Create credentials from a profile dict and password"""
        return cls(
            host=db_config['HOST'],
            port=db_config['PORT'],
            name=db_config['NAME'],
            user=db_config['USER'],
            password=password,
            ssl_mode=db_config['SSL_MODE']
        )

class DatabaseManager:
    """Resolves the connection string for the current environment"""

    @staticmethod
    def get_connection_string(db_config: dict, db_password: str) -> str:
        """
        Generate database connection string from a profile and password

        Args:
            db_config: Profile returned by determine_environment_config
            db_password: Database password (may be empty for local)

        Returns:
            Complete database connection string
        """
        credentials = DatabaseCredentials.from_config(db_config, db_password)
        return credentials.to_connection_string()

    @classmethod
    def initialize_from_env(cls, config: Settings = settings) -> str:
        """
        Resolve the connection string from settings

        Returns:
            Database connection string

        Raises:
            ValueError: If a deployed profile has no DB_PASSWORD
        """
        if config.DATABASE_URL:
            return config.DATABASE_URL

        db_config = determine_environment_config(config)
        if config.ENVIRONMENT != 'local' and not config.DB_PASSWORD:
            raise ValueError("DB_PASSWORD setting is required outside the local environment")

        return cls.get_connection_string(db_config, config.DB_PASSWORD or '')
