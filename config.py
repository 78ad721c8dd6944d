import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _split_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass
class Settings:
    """Runtime settings for the OTP service"""

    # Mail
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_timeout: int = 30
    sender_name: str = "Unhinged App"

    # User records
    user_store: str = "firestore"
    users_collection: str = "users"
    user_store_seed: Optional[str] = None
    firebase_sa_path: Optional[str] = None

    # HTTP
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            email_user=os.getenv("EMAIL_USER") or os.getenv("GMAIL_USER"),
            email_pass=os.getenv("EMAIL_PASS") or os.getenv("GMAIL_PASS"),
            smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", 587)),
            smtp_timeout=int(os.getenv("SMTP_TIMEOUT", 30)),
            sender_name=os.getenv("SENDER_NAME", "Unhinged App"),
            user_store=os.getenv("USER_STORE", "firestore").lower(),
            users_collection=os.getenv("USERS_COLLECTION", "users"),
            user_store_seed=os.getenv("USER_STORE_SEED"),
            firebase_sa_path=os.getenv("FIREBASE_SA_PATH")
            or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
            cors_origins=_split_origins(os.getenv("CORS_ORIGINS", "*")),
            port=int(os.getenv("PORT", 3000)),
        )
