# shared/config.py
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _project_root() -> Path:
    # shared/ lives one level under repo root
    return Path(__file__).resolve().parents[1]


def _as_bool(v: str, default: bool = False) -> bool:
    if v is None:
        return default
    s = v.strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


@dataclass(frozen=True)
class Settings:
    # Event log persistence (stdout echo is always on)
    event_log_enabled: bool

    # Search runtime
    search_config_path: Path
    max_parallel_backtests: int  # 0 = use value from search config

    # Files
    db_path: Path
    runs_dir: Path


def load_settings(require_db: bool = False) -> Settings:
    root = _project_root()

    # Load .env from repo root regardless of current working dir
    env_path = root / ".env"
    load_dotenv(dotenv_path=env_path, override=False)

    event_log_enabled = _as_bool(os.getenv("STRATSEARCH_EVENT_LOG", "0"), default=False)

    config_path = root / "config" / "search.yml"
    config_override = os.getenv("STRATSEARCH_CONFIG", "").strip()
    if config_override:
        config_path = Path(config_override).expanduser().resolve()

    parallel_raw = os.getenv("STRATSEARCH_MAX_PARALLEL", "").strip()
    try:
        max_parallel = int(parallel_raw) if parallel_raw else 0
    except ValueError:
        raise RuntimeError("STRATSEARCH_MAX_PARALLEL must be an integer")
    if max_parallel < 0:
        raise RuntimeError("STRATSEARCH_MAX_PARALLEL must be >= 0")

    db_path = root / "data" / "strategy_search.sqlite3"
    db_path_override = os.getenv("STRATSEARCH_DB_PATH", "").strip()
    if db_path_override:
        db_path = Path(db_path_override).expanduser().resolve()
    elif require_db and not db_path.parent.exists():
        raise RuntimeError(f"Missing data directory for sqlite store: {db_path.parent}")

    runs_dir = Path(os.getenv("STRATSEARCH_RUNS_DIR", "").strip() or "research_runs")

    return Settings(
        event_log_enabled=event_log_enabled,
        search_config_path=config_path,
        max_parallel_backtests=max_parallel,
        db_path=db_path,
        runs_dir=runs_dir,
    )
