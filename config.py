"""
Centralized configuration (pydantic-settings 2.x)
.env is resolved from the repo root, independent of cwd
"""
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, ValidationError
import logging

logger = logging.getLogger(__name__)


def _resolve_env_path() -> Path:
    """Resolve .env path from repo root (cwd-proof)."""
    return Path(__file__).resolve().parent / ".env"


_env_path = _resolve_env_path()
if not _env_path.exists():
    logger.debug(f".env not found at {_env_path}; using environment variables and defaults")


def normalize_sqlalchemy_url(url: str) -> str:
    """
    Normalize a database URL for SQLAlchemy (sync).
    - postgresql:// or postgres://  -> postgresql+psycopg2://
    - postgresql+psycopg2:// and sqlite:// stay as they are
    """
    if not url:
        return url
    s = url.strip().strip('"').strip("'")
    sl = s.lower()
    if sl.startswith("sqlite") or sl.startswith("postgresql+"):
        return s
    if sl.startswith("postgresql://"):
        return "postgresql+psycopg2://" + s[len("postgresql://"):]
    if sl.startswith("postgres://"):
        return "postgresql+psycopg2://" + s[len("postgres://"):]
    return s


def redact_database_url(url: str) -> str:
    """Redact password from database URL for safe logging."""
    if not url:
        return url
    try:
        if "@" in url:
            auth_part, rest = url.rsplit("@", 1)
            if "://" in auth_part:
                scheme_part, creds = auth_part.split("://", 1)
                if ":" in creds:
                    user = creds.split(":")[0]
                    return f"{scheme_part}://{user}:***@{rest}"
                return f"{scheme_part}://***@{rest}"
        return url
    except Exception:
        return (url[:50] + "...") if len(url) > 50 else url


def parse_db_scheme(url: str) -> str:
    """Extract database scheme from URL."""
    if not url:
        return "unknown"
    url_lower = url.lower()
    if url_lower.startswith("postgresql") or url_lower.startswith("postgres"):
        return "postgresql"
    if url_lower.startswith("sqlite"):
        return "sqlite"
    return "unknown"


class Settings(BaseSettings):
    """Application settings with safe defaults"""

    model_config = SettingsConfigDict(
        env_file=str(_env_path) if _env_path.exists() else None,
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # ==================== API ====================
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(default="sqlite:///./fund_resolver.db")
    STORE_OP_TIMEOUT_SECONDS: float = Field(default=5.0)

    # ==================== CACHE ====================
    REDIS_URL: Optional[str] = Field(default=None)
    CACHE_TTL_SECONDS: int = Field(default=900)
    CACHE_OP_TIMEOUT_SECONDS: float = Field(default=1.0)

    # ==================== PROVIDERS ====================
    PROVIDER_ORDER: str = Field(default="oracle,mfapi,rapidapi")
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=5.0)
    ORACLE_VM_URL: Optional[str] = Field(default=None)
    ORACLE_API_KEY: Optional[str] = Field(default=None)
    MFAPI_BASE_URL: str = Field(default="https://api.mfapi.in/mf")
    RAPIDAPI_KEY: Optional[str] = Field(default=None)
    RAPIDAPI_HOST: str = Field(default="latest-mutual-fund-nav.p.rapidapi.com")

    # ==================== RESOLVER ====================
    RESOLVER_COALESCE_MISSES: bool = Field(default=True)

    # ==================== BACKFILL ====================
    ENABLE_BACKFILL_WORKER: bool = Field(default=True)
    BACKFILL_PROVIDER_TIMEOUT_SECONDS: float = Field(default=30.0)
    BACKFILL_POLL_SECONDS: float = Field(default=5.0)
    BACKFILL_MAX_ATTEMPTS: int = Field(default=3)
    BACKFILL_RETRY_DELAY_SECONDS: float = Field(default=60.0)

    # ==================== SCHEDULER ====================
    ENABLE_SCHEDULER: bool = Field(default=False)
    MARKET_TIMEZONE: str = Field(default="Asia/Kolkata")
    INDEX_REFRESH_SECONDS: int = Field(default=300)
    INDEX_VENDOR_URL: str = Field(default="https://www.nseindia.com/api/allIndices")
    VALUE_FEED_URL: str = Field(default="https://www.amfiindia.com/spages/NAVAll.txt")
    VALUE_FEED_TIME: str = Field(default="22:30")
    VALUE_FEED_MIN_INTERVAL_SECONDS: float = Field(default=60.0)
    WEEKLY_GRAPH_DAY: str = Field(default="sun")
    WEEKLY_GRAPH_TIME: str = Field(default="02:00")
    WEEKLY_GRAPH_BATCH_SIZE: int = Field(default=50)
    JOB_MAX_ATTEMPTS: int = Field(default=3)
    JOB_BACKOFF_SECONDS: float = Field(default=30.0)
    RETURNS_RECOMPUTE_DELAY_SECONDS: float = Field(default=5.0)

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:5173")

    # ==================== DERIVED FLAGS ====================
    ENABLE_REDIS: bool = Field(default=False, validate_default=True)

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def validate_database_url(cls, v):
        """Accept PostgreSQL or SQLite; upgrade postgresql:// to postgresql+psycopg2://."""
        s = v.strip() if isinstance(v, str) else str(v or "")
        if not s:
            raise ValueError("DATABASE_URL is required.")
        out = normalize_sqlalchemy_url(s)
        if parse_db_scheme(out) == "unknown":
            raise ValueError("DATABASE_URL must be PostgreSQL or SQLite.")
        return out

    @field_validator('ENABLE_REDIS', mode='before')
    @classmethod
    def validate_enable_redis(cls, v, info):
        """Enable Redis when REDIS_URL is configured"""
        return bool(info.data.get('REDIS_URL'))

    @field_validator('VALUE_FEED_TIME', 'WEEKLY_GRAPH_TIME')
    @classmethod
    def validate_clock_time(cls, v, info):
        hour, _, minute = str(v).partition(":")
        if not (hour.isdigit() and minute.isdigit() and int(hour) < 24 and int(minute) < 60):
            raise ValueError(f"{info.field_name} must be HH:MM")
        return f"{int(hour):02d}:{int(minute):02d}"

    @field_validator('WEEKLY_GRAPH_DAY')
    @classmethod
    def validate_weekly_graph_day(cls, v):
        day = str(v).strip().lower()[:3]
        if day not in ("mon", "tue", "wed", "thu", "fri", "sat", "sun"):
            raise ValueError("WEEKLY_GRAPH_DAY must be a weekday name (mon..sun)")
        return day

    @property
    def provider_order_list(self) -> List[str]:
        """PROVIDER_ORDER as a list, highest priority first"""
        return [p.strip().lower() for p in self.PROVIDER_ORDER.split(',') if p.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        if not self.CORS_ORIGINS:
            return []
        return [origin.strip() for origin in self.CORS_ORIGINS.split(',')]


try:
    settings = Settings()
except ValidationError as e:
    raise RuntimeError(
        "Invalid configuration. Set DATABASE_URL to a PostgreSQL or SQLite URL."
    ) from e

logger.info(f"Env: {settings.ENVIRONMENT}")
logger.info(f"DB: {redact_database_url(settings.DATABASE_URL)} (scheme={parse_db_scheme(settings.DATABASE_URL)})")
logger.info(f"Redis enabled: {bool(settings.ENABLE_REDIS)}")
logger.info(
    f"Providers: order={settings.provider_order_list} ORACLE_VM_URL={bool(settings.ORACLE_VM_URL)} "
    f"ORACLE_API_KEY={bool(settings.ORACLE_API_KEY)} RAPIDAPI_KEY={bool(settings.RAPIDAPI_KEY)}"
)
