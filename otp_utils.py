"""One-time passcode issue and verification.

User records can be addressed three ways: by document id, by a legacy
``accountId`` field, or by ``email``. Both flows resolve through the same
ordered lookup and then read and write the ``otp``/``otpExpiresAt`` pair on
the resolved record.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from user_store import UserDocument, UserStore

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=5)

ACCOUNT_ID_FIELD = "accountId"
EMAIL_FIELD = "email"
OTP_FIELD = "otp"
OTP_EXPIRES_FIELD = "otpExpiresAt"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ERRORS ====================


class OtpError(Exception):
    """Base class for errors reported to the caller"""

    code = "OtpError"
    status_code = 400
    default_message = "OTP request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingField(OtpError):
    code = "MissingField"
    default_message = "Missing required field"


class UserNotFound(OtpError):
    code = "UserNotFound"
    default_message = "User not found"


class NoPendingOtp(OtpError):
    code = "NoPendingOtp"
    default_message = "OTP not found. Request a new OTP"


class NoExpiry(OtpError):
    code = "NoExpiry"
    default_message = "OTP expiry missing. Request new OTP"


class Expired(OtpError):
    code = "Expired"
    default_message = "OTP expired. Request new OTP"


class Invalid(OtpError):
    code = "Invalid"
    default_message = "Invalid OTP"


class DeliveryFailed(OtpError):
    code = "DeliveryFailed"
    status_code = 500
    default_message = "Failed to send OTP."


class PersistenceFailed(OtpError):
    code = "PersistenceFailed"
    status_code = 500
    default_message = "Failed to save OTP."


class UpstreamAuthUpdateFailed(OtpError):
    """Identity provider mirror failed. Logged, never returned to callers."""

    code = "UpstreamAuthUpdateFailed"
    status_code = 500
    default_message = "Failed to update auth user"


# ==================== RESOLUTION ====================


def resolve_user(
    store: UserStore, account_id: Optional[str] = None, email: Optional[str] = None
) -> Optional[UserDocument]:
    """Find the one user record for an id/email pair.

    Lookup order, first hit wins:
      1. document whose id is ``account_id``
      2. document whose ``accountId`` field equals ``account_id``
      3. document whose ``email`` field equals ``email``
    """
    if account_id:
        doc = store.get_by_id(account_id)
        if doc is not None:
            return doc

        matches = store.query_equals(ACCOUNT_ID_FIELD, account_id, limit=1)
        if matches:
            return matches[0]

    if email:
        matches = store.query_equals(EMAIL_FIELD, email, limit=1)
        if matches:
            return matches[0]

    return None


class UserResolver:
    def __init__(self, store: UserStore):
        self.store = store

    def resolve(
        self, account_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[UserDocument]:
        return resolve_user(self.store, account_id=account_id, email=email)


def to_datetime(value: Any) -> datetime:
    """Normalize a stored expiry to an aware UTC datetime.

    Accepts datetimes (naive ones are UTC), Firestore-style timestamps,
    ISO-8601 strings and epoch milliseconds.
    """
    if isinstance(value, datetime):
        dt = value
    elif hasattr(value, "to_datetime"):
        dt = value.to_datetime()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise TypeError(f"Unsupported expiry value: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ==================== ISSUE ====================


@dataclass
class IssueResult:
    email: str
    account_id: Optional[str]
    doc_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def persisted(self) -> bool:
        return self.doc_id is not None


class OtpIssuer:
    """Emails a caller-supplied code and records it as pending on the user"""

    def __init__(
        self,
        resolver: UserResolver,
        mailer,
        ttl: timedelta = OTP_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.mailer = mailer
        self.ttl = ttl
        self.clock = clock

    @property
    def store(self) -> UserStore:
        return self.resolver.store

    def issue(self, email: Optional[str], otp: Any, account_id: Optional[str] = None) -> IssueResult:
        if not email or otp is None or otp == "":
            raise MissingField("Missing email or otp")
        otp = str(otp)

        # Never record a code the user could not have received
        result = self.mailer.send_otp(email, otp, int(self.ttl.total_seconds() // 60))
        if not result.get("success"):
            raise DeliveryFailed(f"Failed to send OTP. {result.get('error', '')}".strip())

        issued = IssueResult(email=email, account_id=account_id)
        try:
            user = self.resolver.resolve(account_id=account_id, email=email)
            if user is None:
                # TODO: confirm with product whether codes may go to addresses without an account
                logger.warning(
                    f"⚠️ No user record found for accountId={account_id!r} email={email!r}; "
                    "OTP was emailed but not saved"
                )
                return issued

            expires_at = self.clock() + self.ttl
            self.store.merge_fields(
                user.id, {OTP_FIELD: otp, OTP_EXPIRES_FIELD: expires_at}
            )
        except Exception as e:
            logger.error(f"❌ OTP emailed to {email} but could not be saved: {e}")
            raise PersistenceFailed(f"Failed to save OTP. {e}") from e

        issued.doc_id = user.id
        issued.expires_at = expires_at
        logger.info(f"✅ OTP issued for user {user.id}, expires {expires_at.isoformat()}")
        return issued


# ==================== VERIFY ====================


@dataclass
class VerifyResult:
    email: str
    account_id: str
    doc_id: str


class OtpVerifier:
    def __init__(
        self,
        resolver: UserResolver,
        identity=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.identity = identity
        self.clock = clock

    @property
    def store(self) -> UserStore:
        return self.resolver.store

    def verify(
        self,
        email: Optional[str],
        otp: Any,
        account_id: Optional[str],
        defer: Optional[Callable[..., Any]] = None,
    ) -> VerifyResult:
        """Check a submitted code and mark the user's email verified.

        Nothing is written unless the code matches. ``defer`` schedules the
        identity provider update to run later (e.g. a FastAPI background
        task); without it the update runs before returning.
        """
        if not email or otp is None or otp == "" or not account_id:
            raise MissingField("Missing email, accountId, or otp")

        user = self.resolver.resolve(account_id=account_id, email=email)
        if user is None:
            raise UserNotFound()

        stored_otp = user.get(OTP_FIELD)
        expires_raw = user.get(OTP_EXPIRES_FIELD)
        if not stored_otp:
            raise NoPendingOtp()
        if not expires_raw:
            raise NoExpiry()

        if self.clock() > to_datetime(expires_raw):
            raise Expired()

        if str(stored_otp) != str(otp):
            raise Invalid()

        try:
            self.store.update_fields(
                user.id,
                {
                    "emailVerified": True,
                    OTP_FIELD: self.store.delete_field,
                    OTP_EXPIRES_FIELD: self.store.delete_field,
                    "verifiedAt": self.store.server_timestamp,
                },
            )
        except Exception as e:
            logger.error(f"❌ Could not mark user {user.id} verified: {e}")
            raise PersistenceFailed(f"Failed to verify OTP. {e}") from e

        logger.info(f"✅ Email verified for user {user.id}")

        if defer is not None:
            defer(self.propagate_verified, account_id)
        else:
            self.propagate_verified(account_id)

        return VerifyResult(email=email, account_id=account_id, doc_id=user.id)

    def propagate_verified(self, account_id: str) -> bool:
        """Best-effort mirror of emailVerified to the identity provider"""
        if self.identity is None:
            return False
        try:
            self.identity.set_email_verified(account_id, True)
        except Exception as e:
            failure = UpstreamAuthUpdateFailed(f"Failed to update auth user {account_id}: {e}")
            logger.error(f"❌ {failure.message}")
            return False
        return True
