import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        recurring_min_occurrences: int,
        recurring_amount_tolerance: float,
        recurring_lookback_days: int,
        import_fuzzy_max_distance: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.recurring_min_occurrences = recurring_min_occurrences
        self.recurring_amount_tolerance = recurring_amount_tolerance
        self.recurring_lookback_days = recurring_lookback_days
        self.import_fuzzy_max_distance = import_fuzzy_max_distance


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _default_database_url() -> str:
    explicit = os.getenv("LEDGER_DATABASE_URL")
    if explicit:
        return explicit
    return f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = _default_database_url()
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/London")
    min_occurrences = int(os.getenv("LEDGER_RECURRING_MIN_OCCURRENCES", "3"))
    amount_tolerance = float(os.getenv("LEDGER_RECURRING_AMOUNT_TOLERANCE", "0.05"))
    lookback_days = int(os.getenv("LEDGER_RECURRING_LOOKBACK_DAYS", "730"))
    fuzzy_max_distance = int(os.getenv("LEDGER_IMPORT_FUZZY_MAX_DISTANCE", "1"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        recurring_min_occurrences=min_occurrences,
        recurring_amount_tolerance=amount_tolerance,
        recurring_lookback_days=lookback_days,
        import_fuzzy_max_distance=fuzzy_max_distance,
    )
