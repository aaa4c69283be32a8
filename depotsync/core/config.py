import os
import sys
from pathlib import Path


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            cleaned = value.strip().strip('"').strip("'")
            os.environ[key] = cleaned
    except OSError:
        return


def _load_env() -> None:
    candidates = []
    if getattr(sys, "frozen", False):
        exe_dir = Path(sys.executable).parent
        candidates.extend([exe_dir / ".env", exe_dir.parent / ".env"])
    else:
        current = Path(__file__).resolve()
        candidates.extend(
            [
                current.parents[2] / ".env",
                Path.cwd() / ".env",
            ]
        )

    for candidate in candidates:
        _load_env_file(candidate)


_load_env()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _default_database_url() -> str:
    explicit_path = os.getenv("DEPOTSYNC_DB_PATH", "").strip()
    if explicit_path:
        return f"sqlite:///{Path(explicit_path).as_posix()}"

    current = Path(__file__).resolve()
    project_root = current.parents[2]
    dev_db = (project_root / "depotsync.db").resolve()
    return f"sqlite:///{dev_db.as_posix()}"


DATABASE_URL = os.getenv("DATABASE_URL", _default_database_url())
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
# The log ingestion pipeline writes the same sqlite file.
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "15000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

_DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
)


def _normalize_cors(origins: str) -> list[str]:
    items: list[str] = []
    for raw in origins.split(","):
        value = raw.strip()
        if value and value not in items:
            items.append(value)
    return items


CORS_ORIGINS = _normalize_cors(os.getenv("CORS_ORIGINS", _DEFAULT_CORS_ORIGINS))

STEAM_WEB_API_URL = os.getenv("STEAM_WEB_API_URL", "https://api.steampowered.com")
STEAM_WEB_API_KEY = os.getenv("STEAM_WEB_API_KEY", "")
STEAM_REQUEST_TIMEOUT_SECONDS = int(os.getenv("STEAM_REQUEST_TIMEOUT_SECONDS", "30"))
STEAM_ACCOUNT_NAME = os.getenv("STEAM_ACCOUNT_NAME", "")
STEAM_ACCOUNT_PASSWORD = os.getenv("STEAM_ACCOUNT_PASSWORD", "")

# Above 200 apps per request the token/product-info calls start timing out.
PICS_APP_BATCH_SIZE = int(os.getenv("PICS_APP_BATCH_SIZE", "200"))

# Steam stops serving incremental deltas somewhere past ~20k changes.
DEPOT_GAP_THRESHOLD = int(os.getenv("DEPOT_GAP_THRESHOLD", "20000"))
DEPOT_APPS_PER_CHANGE = int(os.getenv("DEPOT_APPS_PER_CHANGE", "2"))
DEPOT_FULL_CATALOG_APPS = int(os.getenv("DEPOT_FULL_CATALOG_APPS", "270000"))
DEPOT_VIABILITY_CACHE_SECONDS = int(os.getenv("DEPOT_VIABILITY_CACHE_SECONDS", "3600"))

DEPOT_RETRY_ATTEMPTS = int(os.getenv("DEPOT_RETRY_ATTEMPTS", "3"))
DEPOT_RETRY_BACKOFF_SECONDS = float(os.getenv("DEPOT_RETRY_BACKOFF_SECONDS", "2.0"))

DEPOT_SNAPSHOT_URL = os.getenv(
    "DEPOT_SNAPSHOT_URL",
    "https://github.com/regix1/lancache-pics/releases/latest/download/pics_depot_mappings.json",
)
DEPOT_SNAPSHOT_TIMEOUT_SECONDS = int(os.getenv("DEPOT_SNAPSHOT_TIMEOUT_SECONDS", "300"))
DEPOT_SNAPSHOT_MIN_MAPPINGS = int(os.getenv("DEPOT_SNAPSHOT_MIN_MAPPINGS", "1000"))
DEPOT_SNAPSHOT_BATCH_SIZE = int(os.getenv("DEPOT_SNAPSHOT_BATCH_SIZE", "5000"))
DEPOT_SNAPSHOT_PATH = os.getenv(
    "DEPOT_SNAPSHOT_PATH",
    str(Path(__file__).resolve().parents[2] / "data" / "pics_depot_mappings.json"),
)

DEPOT_CRAWL_INTERVAL_HOURS = float(os.getenv("DEPOT_CRAWL_INTERVAL_HOURS", "1"))
DEPOT_CRAWL_MODE = os.getenv("DEPOT_CRAWL_MODE", "incremental").strip().lower() or "incremental"
DEPOT_SCHEDULER_ENABLED = _env_flag("DEPOT_SCHEDULER_ENABLED", "true")
DEPOT_SCHEDULER_TICK_SECONDS = int(os.getenv("DEPOT_SCHEDULER_TICK_SECONDS", "60"))
# Unresolved downloads are re-tagged from stored mappings between scans.
DEPOT_BACKFILL_INTERVAL_SECONDS = int(os.getenv("DEPOT_BACKFILL_INTERVAL_SECONDS", "30"))
