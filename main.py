from pydantic import AliasChoices, BaseModel, Field, field_validator
from fastapi import FastAPI, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from typing import Optional, Dict, Any
from datetime import datetime

from config import Settings
from email_utils import OtpMailer
from identity import FirebaseIdentityProvider, init_firebase
from otp_utils import OtpError, OtpIssuer, OtpVerifier, UserResolver
from user_store import FirestoreUserStore, MemoryUserStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Email OTP API starting up...")
    logger.info(f"User store backend: {settings.user_store} (collection={settings.users_collection})")
    if not settings.email_user or not settings.email_pass:
        logger.warning("⚠️ EMAIL_USER/EMAIL_PASS not set, OTP emails will fail")
    yield
    logger.info("📧 Email OTP API shutting down...")


app = FastAPI(
    lifespan=lifespan,
    title="Email OTP Verification API",
    description="Issues one-time passcodes by email and verifies them against user records",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic Models ---
def _stringify_number(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class SendOtpRequest(BaseModel):
    email: Optional[str] = None
    otp: Optional[str] = None
    accountId: Optional[str] = Field(
        None, validation_alias=AliasChoices("accountId", "uid")
    )

    coerce_numbers = field_validator("otp", "accountId", mode="before")(_stringify_number)


class VerifyOtpRequest(SendOtpRequest):
    pass


class APIResponse(BaseModel):
    success: bool
    message: str
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class VerifiedUser(BaseModel):
    email: str
    accountId: str


class VerifyResponse(APIResponse):
    user: Optional[VerifiedUser] = None


# --- Dependencies ---
@lru_cache()
def get_resolver() -> UserResolver:
    if settings.user_store == "memory":
        if settings.user_store_seed:
            store = MemoryUserStore.from_json_file(settings.user_store_seed)
        else:
            store = MemoryUserStore()
    else:
        firebase_app = init_firebase(settings.firebase_sa_path)
        store = FirestoreUserStore.from_app(firebase_app, settings.users_collection)
    return UserResolver(store)


@lru_cache()
def get_mailer() -> OtpMailer:
    return OtpMailer.from_settings(settings)


@lru_cache()
def get_identity_provider() -> Optional[FirebaseIdentityProvider]:
    if settings.user_store == "memory":
        return None
    return FirebaseIdentityProvider(init_firebase(settings.firebase_sa_path))


def get_issuer() -> OtpIssuer:
    return OtpIssuer(get_resolver(), get_mailer())


def get_verifier() -> OtpVerifier:
    return OtpVerifier(get_resolver(), get_identity_provider())


# --- API Endpoints ---
@app.get("/", response_class=PlainTextResponse)
async def root():
    """Liveness check"""
    return "Email OTP API is running"


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/sendOtp", response_model=APIResponse, response_model_exclude_none=True)
async def send_otp(data: SendOtpRequest, issuer: OtpIssuer = Depends(get_issuer)):
    """Email an OTP and save it as pending on the user record"""
    try:
        await run_in_threadpool(issuer.issue, data.email, data.otp, data.accountId)
    except OtpError:
        raise
    except Exception as e:
        logger.error(f"sendOtp error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to send OTP. {e}",
        )

    return APIResponse(success=True, message="OTP sent successfully")


@app.post("/verifyOtp", response_model=VerifyResponse, response_model_exclude_none=True)
async def verify_otp(
    data: VerifyOtpRequest,
    background_tasks: BackgroundTasks,
    verifier: OtpVerifier = Depends(get_verifier),
):
    """Verify an OTP and mark the user's email as verified"""
    try:
        result = await run_in_threadpool(
            verifier.verify,
            data.email,
            data.otp,
            data.accountId,
            background_tasks.add_task,
        )
    except OtpError:
        raise
    except Exception as e:
        logger.error(f"verifyOtp error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to verify OTP. {e}",
        )

    return VerifyResponse(
        success=True,
        message="Email verified successfully",
        user=VerifiedUser(email=result.email, accountId=result.account_id),
    )


# --- Exception Handlers ---
def _error_response(status_code: int, message: str, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(success=False, message=message, error=code).model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(OtpError)
async def otp_exception_handler(request: Request, exc: OtpError):
    return _error_response(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Rejected request body on {request.url.path}: {exc.errors()}")
    return _error_response(
        status.HTTP_400_BAD_REQUEST, "Missing or invalid request fields", "MissingField"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return _error_response(500, "Internal server error")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, log_level="info")
