from __future__ import annotations
from typing import Tuple
from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()


def parse_windows(raw: str) -> Tuple[int, ...]:
    """'7,14,30' -> (7, 14, 30), sorted and de-duplicated."""
    sizes = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        w = int(part)
        if w <= 0:
            raise ValueError(f"window size must be positive: {w}")
        sizes.add(w)
    if not sizes:
        raise ValueError("at least one window size is required")
    return tuple(sorted(sizes))


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///epc_trends.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    trend_windows: Tuple[int, ...] = parse_windows(os.getenv("TREND_WINDOWS", "7,14,30"))
    trend_retries: int = int(os.getenv("TREND_RETRIES", "3"))
    trend_base_sleep: float = float(os.getenv("TREND_BASE_SLEEP", "0.5"))
    trend_timeout_seconds: float = float(os.getenv("TREND_TIMEOUT_SECONDS", "30"))
    trend_workers: int = int(os.getenv("TREND_WORKERS", "4"))

    linkhaitao_base_url: str = os.getenv("LINKHAITAO_BASE_URL", "https://www.linkhaitao.com/api2.php")
    linkhaitao_token: str = os.getenv("LINKHAITAO_TOKEN", "")
    linkhaitao_salt: str = os.getenv("LINKHAITAO_SALT", "")

    crawl_config_path: str = os.getenv("CRAWL_CONFIG", "epc_trends/crawl.yaml")

settings = Settings()
