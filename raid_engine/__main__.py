"""Entry point for the raid tracking service"""
import logging
import signal
import sys
import threading
import traceback

from raid_engine.config import SECRET_SETTINGS, settings
from raid_engine.db import db
from raid_engine.engine import RaidEngine
from raid_engine.models.raid import Platform
from raid_engine.services.audius import AudiusAPI, AudiusPlaybackVerifier
from raid_engine.services.authorization import StoredAuthorizationProvider
from raid_engine.services.settlement import HttpSettlementClient
from raid_engine.services.spotify import SpotifyAPI, SpotifyPlaybackVerifier
from raid_engine.services.storage import StorageService
from raid_engine.utils.json_encoder import json_dumps

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
                    format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

def build_engine(storage: StorageService) -> RaidEngine:
    """Wire the engine with the database-backed collaborators"""
    platform = settings.platform_settings
    spotify = SpotifyPlaybackVerifier(
        StoredAuthorizationProvider(storage, Platform.SPOTIFY),
        SpotifyAPI(platform.spotify_api_url, platform.spotify_market, platform.timeout_seconds)
    )
    audius = AudiusPlaybackVerifier(
        StoredAuthorizationProvider(storage, Platform.AUDIUS, require_token=False),
        AudiusAPI(platform.audius_api_url, platform.timeout_seconds)
    )
    return RaidEngine(storage, [spotify, audius], HttpSettlementClient())

def run() -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    stop_requested = threading.Event()
    engine = None
    try:
        # Initialize database connection
        db.init()

        # Log config (excluding sensitive data)
        logger.info("Using configuration:")
        safe_config = settings.model_dump(exclude=SECRET_SETTINGS)
        logger.info(json_dumps(safe_config, indent=2))

        engine = build_engine(StorageService(db))
        engine.restore_sessions()
        engine.retry_pending_settlements()
        engine.start()

        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: stop_requested.set())
        while not stop_requested.wait(1.0):
            pass
        logger.info("Shutdown requested")

    except Exception as e:
        logger.error(f"Error running raid engine: {e}")
        traceback.print_exc()
        sys.exit(1)
    finally:
        if engine is not None:
            engine.stop()
        db.dispose()

if __name__ == "__main__":
    run()
