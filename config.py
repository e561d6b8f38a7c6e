import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        data_dir: Path,
        timezone: str,
        secret_key: str,
        token_ttl_hours: int,
        ai_api_url: str,
        ai_api_key: str,
        ai_model: str,
        ai_timeout_secs: float,
        ai_allowed_user_id: Optional[int],
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        smtp_use_tls: bool,
        email_from: str,
        frontend_url: str,
        reports_dir: Path,
        media_dir: Path,
        enable_scheduler: bool,
    ) -> None:
        self.database_url = database_url
        self.data_dir = data_dir
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_ttl_hours = token_ttl_hours
        self.ai_api_url = ai_api_url
        self.ai_api_key = ai_api_key
        self.ai_model = ai_model
        self.ai_timeout_secs = ai_timeout_secs
        self.ai_allowed_user_id = ai_allowed_user_id
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.email_from = email_from
        self.frontend_url = frontend_url
        self.reports_dir = reports_dir
        self.media_dir = media_dir
        self.enable_scheduler = enable_scheduler


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYWISE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "moneywise.db"
    database_url = os.getenv("MONEYWISE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEYWISE_TIMEZONE", "Europe/Paris")
    secret_key = os.getenv(
        "MONEYWISE_SECRET_KEY",
        "3f6b1c0e9d2a47c8b5e4f1a6d9c2b7e0a3f8c1d6e9b2a5f4c7d0e3b6a9f2c5d8",
    )
    token_ttl_hours = int(os.getenv("MONEYWISE_TOKEN_TTL_HOURS", "24"))
    ai_api_url = os.getenv(
        "MONEYWISE_AI_API_URL", "https://api.groq.com/openai/v1/chat/completions"
    )
    ai_api_key = os.getenv("MONEYWISE_AI_API_KEY", "")
    ai_model = os.getenv("MONEYWISE_AI_MODEL", "llama-3.1-8b-instant")
    ai_timeout_secs = float(os.getenv("MONEYWISE_AI_TIMEOUT_SECS", "20"))
    allowed_raw = os.getenv("MONEYWISE_AI_ALLOWED_USER_ID", "").strip()
    ai_allowed_user_id = int(allowed_raw) if allowed_raw else None
    reports_dir = Path(
        os.getenv("MONEYWISE_REPORTS_DIR", str(data_dir / "reports"))
    ).resolve()
    media_dir = Path(os.getenv("MONEYWISE_MEDIA_DIR", str(data_dir / "media"))).resolve()
    return Settings(
        database_url=database_url,
        data_dir=data_dir,
        timezone=timezone,
        secret_key=secret_key,
        token_ttl_hours=token_ttl_hours,
        ai_api_url=ai_api_url,
        ai_api_key=ai_api_key,
        ai_model=ai_model,
        ai_timeout_secs=ai_timeout_secs,
        ai_allowed_user_id=ai_allowed_user_id,
        smtp_host=os.getenv("MONEYWISE_SMTP_HOST", "localhost"),
        smtp_port=int(os.getenv("MONEYWISE_SMTP_PORT", "587")),
        smtp_user=os.getenv("MONEYWISE_SMTP_USER", ""),
        smtp_password=os.getenv("MONEYWISE_SMTP_PASSWORD", ""),
        smtp_use_tls=_env_bool("MONEYWISE_SMTP_USE_TLS", "true"),
        email_from=os.getenv("MONEYWISE_EMAIL_FROM", "MoneyWise <no-reply@moneywise.app>"),
        frontend_url=os.getenv("MONEYWISE_FRONTEND_URL", "http://localhost:5173"),
        reports_dir=reports_dir,
        media_dir=media_dir,
        enable_scheduler=_env_bool("MONEYWISE_ENABLE_SCHEDULER", "true"),
    )
