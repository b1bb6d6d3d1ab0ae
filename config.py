# config.py
import os
import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

REQUIRED_KEYS = (
    "SECRET_KEY",
    "VNPAY_TMN_CODE",
    "VNPAY_HASH_SECRET",
    "VNPAY_PAYMENT_URL",
    "VNPAY_RETURN_URL",
)


class ConfigurationError(Exception):
    pass


def load_environment():
    env_path = Path(BASE_DIR) / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)


def _get_int_env(key, default):
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


class Config:
    def __init__(self, **overrides):
        self.SECRET_KEY = os.getenv("SECRET_KEY", "")
        self.DATABASE_URL = os.getenv(
            "DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'fastorder.db')}"
        )
        self.DB_TIMEOUT = _get_int_env("DB_TIMEOUT", 10)
        self.TOKEN_MAX_AGE = _get_int_env("TOKEN_MAX_AGE", 86400)

        self.VNPAY_TMN_CODE = os.getenv("VNPAY_TMN_CODE", "")
        self.VNPAY_HASH_SECRET = os.getenv("VNPAY_HASH_SECRET", "")
        self.VNPAY_PAYMENT_URL = os.getenv("VNPAY_PAYMENT_URL", "")
        self.VNPAY_RETURN_URL = os.getenv("VNPAY_RETURN_URL", "")
        self.VNPAY_TIMEZONE = os.getenv("VNPAY_TIMEZONE", "Asia/Ho_Chi_Minh")
        self.VNPAY_EXPIRE_MINUTES = _get_int_env("VNPAY_EXPIRE_MINUTES", 15)

        self.PAYMENT_SUCCESS_URL = os.getenv("PAYMENT_SUCCESS_URL", "/payment/success")
        self.PAYMENT_FAILURE_URL = os.getenv("PAYMENT_FAILURE_URL", "/payment/failed")

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.TESTING = False

        for key, value in overrides.items():
            setattr(self, key, value)

    def as_flask_config(self) -> dict:
        engine_options = {"pool_pre_ping": True}
        if self.DATABASE_URL.startswith("sqlite"):
            engine_options["connect_args"] = {"timeout": self.DB_TIMEOUT, "check_same_thread": False}
        else:
            engine_options["pool_timeout"] = self.DB_TIMEOUT

        out = {k: v for k, v in vars(self).items() if k.isupper()}
        out["SQLALCHEMY_DATABASE_URI"] = self.DATABASE_URL
        out["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
        out["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
        return out


def validate_config(config: Config):
    missing = [k for k in REQUIRED_KEYS if not str(getattr(config, k, "") or "").strip()]
    if missing:
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
        )
    return config


load_environment()
