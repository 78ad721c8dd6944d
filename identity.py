# identity.py
import os
import logging
from pathlib import Path
from typing import Optional

import firebase_admin
from firebase_admin import auth, credentials

logger = logging.getLogger(__name__)


def init_firebase(sa_path: Optional[str] = None):
    """Initialize the Firebase Admin app once and return it."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    if not sa_path:
        here = Path(__file__).resolve().parent
        sa_path = str(here / "serviceAccountKey.json")

    p = Path(sa_path)
    if p.is_file():
        cred = credentials.Certificate(str(p))
    else:
        logger.warning(
            "[firebase] service account file missing (wanted: %s; cwd=%s), using application default credentials",
            sa_path, os.getcwd()
        )
        cred = credentials.ApplicationDefault()
    return firebase_admin.initialize_app(cred)


class FirebaseIdentityProvider:
    """Mirrors verification state into Firebase Authentication."""

    def __init__(self, app=None):
        self.app = app

    def set_email_verified(self, account_id: str, verified: bool = True) -> None:
        auth.update_user(account_id, email_verified=verified, app=self.app)
        logger.info(f"✅ Auth user {account_id} emailVerified={verified}")
