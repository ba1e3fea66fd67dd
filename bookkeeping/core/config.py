from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


DEFAULT_CURRENCY_RATES: dict[str, dict[str, float]] = {
    "CNY": {"HKD": 1.09, "USD": 0.14, "USDT": 0.14},
    "HKD": {"CNY": 0.92, "USD": 0.13, "USDT": 0.13},
    "USD": {"CNY": 7.25, "HKD": 7.78, "USDT": 1.0},
    "USDT": {"CNY": 7.25, "HKD": 7.78, "USD": 1.0},
}


class Settings(BaseSettings):
    APP_NAME: str = "Bookkeeping Backend"
    ENV: str = "dev"

    # SQLite file next to the package so the working directory does not matter
    _default_db_path = Path(__file__).resolve().parents[2] / "ledger.sqlite3"
    DATABASE_URL: str = f"sqlite:///{_default_db_path}"

    CORS_ORIGINS: list[str] = ["*"]
    TIMEZONE: str = "Asia/Shanghai"

    BASE_CURRENCY: str = "CNY"
    DEFAULT_RATES: dict[str, dict[str, float]] = DEFAULT_CURRENCY_RATES

    CALIBRATION_TOLERANCE: float = 0.01
    CALIBRATION_REMINDER_ENABLED: bool = True
    CALIBRATION_INTERVAL_DAYS: int = 30

    BUDGET_PERIODS_PER_ROUND: int = 12
    LARGE_AMOUNT_FALLBACK: float = 2000.0
    LARGE_AMOUNT_WINDOW_DAYS: int = 90
    LARGE_AMOUNT_MIN_SAMPLES: int = 5

    BALANCE_HISTORY_DEFAULT_DAYS: int = 30
    BALANCE_HISTORY_MAX_POINTS: int = 400

    CACHE_TTL_SECONDS: float = 30.0

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="LEDGER_", case_sensitive=False)


settings = Settings()
