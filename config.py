"""
Runtime configuration.

Values come from the process environment, optionally seeded from a ``.env``
file (override the path with ENV_FILE).
"""

import os
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: str = Field("library", description="MongoDB database name")
    default_loan_days: int = Field(14, ge=1, description="Loan length when the caller gives none")
    max_loan_days: int = Field(365, ge=1, description="Longest loan a caller may ask for")
    late_fee_per_day: Decimal = Field(Decimal("1.00"), ge=0, description="Fee charged per started day late")
    currency_symbol: str = Field("$", description="Prefix used when rendering fees")
    api_tokens: List[str] = Field(default_factory=list, description="Tokens accepted for write routes")
    log_level: str = Field("INFO")
    port: int = Field(8000)


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def load_settings() -> Settings:
    load_dotenv(os.getenv("ENV_FILE", ".env"))
    env = os.environ
    data = {
        "database_url": env.get("DATABASE_URL"),
        "database_name": env.get("DATABASE_NAME", "library"),
        "api_tokens": _split(env.get("API_TOKENS")),
        "log_level": env.get("LOG_LEVEL", "INFO"),
    }
    if env.get("DEFAULT_LOAN_DAYS"):
        data["default_loan_days"] = int(env["DEFAULT_LOAN_DAYS"])
    if env.get("MAX_LOAN_DAYS"):
        data["max_loan_days"] = int(env["MAX_LOAN_DAYS"])
    if env.get("LATE_FEE_PER_DAY"):
        data["late_fee_per_day"] = Decimal(env["LATE_FEE_PER_DAY"])
    if env.get("CURRENCY_SYMBOL"):
        data["currency_symbol"] = env["CURRENCY_SYMBOL"]
    if env.get("PORT"):
        data["port"] = int(env["PORT"])
    return Settings(**data)


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
