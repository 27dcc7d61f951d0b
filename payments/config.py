import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip().upper() for item in raw.split(",") if item.strip()]


def _env_routes(name: str) -> Dict[str, List[str]]:
    """"CARD=wompi|backup,PSE=wompi" -> {"CARD": ["wompi", "backup"], "PSE": ["wompi"]}"""
    routes: Dict[str, List[str]] = {}
    for entry in os.getenv(name, "").split(","):
        method, _, gateways = entry.partition("=")
        names = [g.strip().lower() for g in gateways.split("|") if g.strip()]
        if method.strip() and names:
            routes[method.strip().upper()] = names
    return routes


class Settings:
    """Runtime configuration, read once from the environment."""

    def __init__(self, **overrides):
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./payments.db")
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development").lower()
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "")
        self.LOG_DIR: str = os.getenv("LOG_DIR", "")

        # Gateway selection: "sandbox" simulates Wompi locally, "live" talks HTTP
        self.PAYMENT_GATEWAY: str = os.getenv("PAYMENT_GATEWAY", "wompi")
        self.GATEWAY_MODE: str = os.getenv("GATEWAY_MODE", "sandbox").lower()
        # Gateways to build clients for, e.g. "wompi,backup"; empty means PAYMENT_GATEWAY alone
        self.PAYMENT_GATEWAYS: List[str] = [
            g.strip().lower() for g in os.getenv("PAYMENT_GATEWAYS", "").split(",") if g.strip()
        ]
        # Per-method gateway priority, overriding the method catalog
        self.GATEWAY_ROUTES: Dict[str, List[str]] = _env_routes("GATEWAY_ROUTES")

        self.WOMPI_BASE_URL: str = os.getenv("WOMPI_BASE_URL", "https://sandbox.wompi.co/v1")
        self.WOMPI_PUBLIC_KEY: str = os.getenv("WOMPI_PUBLIC_KEY", "")
        self.WOMPI_PRIVATE_KEY: str = os.getenv("WOMPI_PRIVATE_KEY", "")
        self.WOMPI_INTEGRITY_SECRET: str = os.getenv("WOMPI_INTEGRITY_SECRET", "")
        self.WOMPI_WEBHOOK_SECRET: str = os.getenv("WOMPI_WEBHOOK_SECRET", "")

        self.GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
        self.GATEWAY_MAX_RETRIES: int = int(os.getenv("GATEWAY_MAX_RETRIES", "2"))
        self.GATEWAY_BACKOFF_SECONDS: float = float(os.getenv("GATEWAY_BACKOFF_SECONDS", "0.5"))
        self.GATEWAY_BACKOFF_MAX_SECONDS: float = float(os.getenv("GATEWAY_BACKOFF_MAX_SECONDS", "5"))

        self.SUPPORTED_CURRENCIES: List[str] = _env_list("SUPPORTED_CURRENCIES", "COP")
        self.PENDING_EXPIRY_MINUTES: int = int(os.getenv("PENDING_EXPIRY_MINUTES", "30"))
        self.RECONCILE_INTERVAL_SECONDS: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "0"))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def gateway_names(self) -> List[str]:
        return self.PAYMENT_GATEWAYS or [self.PAYMENT_GATEWAY]

    @property
    def webhook_secrets(self) -> Dict[str, str]:
        return {"wompi": self.WOMPI_WEBHOOK_SECRET}

    @property
    def signature_headers(self) -> Dict[str, str]:
        return {"wompi": "X-Wompi-Signature"}


@lru_cache()
def get_settings() -> Settings:
    return Settings()
