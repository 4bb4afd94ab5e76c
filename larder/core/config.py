import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Backend selection: "supabase" talks to the hosted project,
    # "local" runs the SQLAlchemy reference backend.
    BACKEND_MODE: str = "supabase"

    # Supabase project
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None
    SUPABASE_JWT_SECRET: Optional[str] = None
    SUPABASE_JWT_AUDIENCE: str = "authenticated"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    REALTIME_HEARTBEAT_SECONDS: float = 25.0
    REALTIME_RECONNECT_DELAYS_SECONDS: str = "1,2,5,10,30"  # comma-separated, last value repeats

    # Local reference backend
    DATABASE_URL: str = "sqlite://"
    DOWNGRADE_DEACTIVATION_ORDER: str = "newest_first"  # newest_first | oldest_first

    # Entitlement re-evaluation
    ENTITLEMENT_REFRESH_INTERVAL_SECONDS: float = 1800.0
    ENTITLEMENT_FOREGROUND_STALE_SECONDS: float = 300.0
    TRIAL_DAYS: int = 7

    # Roster loading
    ROSTER_RETRY_DELAYS_SECONDS: str = "2,4,6"  # comma-separated
    DEFAULT_HOUSEHOLD_NAME: str = "My Kitchen"

    # Invitations
    INVITATION_EXPIRY_DAYS: int = 7

    # Dashboard API
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def roster_retry_delays(self) -> List[float]:
        try:
            values = [float(x.strip()) for x in self.ROSTER_RETRY_DELAYS_SECONDS.split(",") if x.strip()]
            return values or [2.0, 4.0, 6.0]
        except ValueError:
            return [2.0, 4.0, 6.0]

    @property
    def realtime_reconnect_delays(self) -> List[float]:
        try:
            values = [float(x.strip()) for x in self.REALTIME_RECONNECT_DELAYS_SECONDS.split(",") if x.strip()]
            return values or [1.0, 2.0, 5.0, 10.0, 30.0]
        except ValueError:
            return [1.0, 2.0, 5.0, 10.0, 30.0]

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("larder")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    if cfg.BACKEND_MODE not in ("supabase", "local"):
        message = f"Unknown BACKEND_MODE: {cfg.BACKEND_MODE}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.DOWNGRADE_DEACTIVATION_ORDER not in ("newest_first", "oldest_first"):
        message = f"Unknown DOWNGRADE_DEACTIVATION_ORDER: {cfg.DOWNGRADE_DEACTIVATION_ORDER}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    required_keys = []
    if cfg.BACKEND_MODE == "supabase":
        required_keys = [
            "SUPABASE_URL",
            "SUPABASE_ANON_KEY",
            "SUPABASE_JWT_SECRET",
        ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
