import logging
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / ".env")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )


def encode_mongo_url(mongo_url: str) -> str:
    """URL-encode the password part of a connection string when it holds special characters."""
    if "@" not in mongo_url or "://" not in mongo_url:
        return mongo_url
    protocol_end = mongo_url.find("://") + 3
    at_pos = mongo_url.rfind("@")
    if at_pos <= protocol_end:
        return mongo_url
    user_pass = mongo_url[protocol_end:at_pos]
    if ":" not in user_pass:
        return mongo_url
    username, password = user_pass.split(":", 1)
    if any(c in password for c in ["@", "#", "$", "&", "+", "=", "/", "?"]):
        return mongo_url[:protocol_end] + f"{username}:{quote_plus(password)}" + mongo_url[at_pos:]
    return mongo_url


def _split_origins(raw: str) -> List[str]:
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


class Settings(BaseModel):
    mongo_url: Optional[str] = None
    db_name: str = "halaqat_db"
    jwt_secret: Optional[str] = None
    token_expire_minutes: int = 60 * 24 * 7
    admin_email: str = "admin123@quran.system"
    admin_name: str = "عبدالله الأحمد"
    admin_password: str = "Admin@123"
    school_timezone: str = "Asia/Riyadh"
    preferences_path: Path = ROOT_DIR / "preferences.json"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    index_help_url: Optional[str] = None
    report_font_path: Optional[str] = None

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.school_timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        mongo_url = (os.environ.get("MONGO_URL") or "").strip()
        values = {
            "mongo_url": encode_mongo_url(mongo_url) if mongo_url else None,
            "cors_origins": _split_origins(os.environ.get("CORS_ORIGINS", "*")),
            "index_help_url": os.environ.get("INDEX_HELP_URL") or None,
        }
        optional = {
            "db_name": "DB_NAME",
            "jwt_secret": "JWT_SECRET",
            "token_expire_minutes": "TOKEN_EXPIRE_MINUTES",
            "admin_email": "ADMIN_EMAIL",
            "admin_name": "ADMIN_NAME",
            "admin_password": "ADMIN_PASSWORD",
            "school_timezone": "SCHOOL_TIMEZONE",
            "preferences_path": "PREFERENCES_PATH",
            "report_font_path": "REPORT_FONT_PATH",
        }
        for field, env_name in optional.items():
            value = os.environ.get(env_name)
            if value:
                values[field] = value.strip()
        return cls(**values)
