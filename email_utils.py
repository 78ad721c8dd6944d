import smtplib
import ssl
import email
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
import logging
from typing import Dict, List, Optional, Union
from dataclasses import dataclass
from datetime import datetime
import re

from config import Settings

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


OTP_SUBJECT = "Your OTP Code"


@dataclass
class EmailConfig:
    """Email configuration class"""

    # SMTP Configuration
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True

    # General settings
    timeout: int = 30
    sender_name: Optional[str] = "Unhinged App"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailConfig":
        return cls(
            smtp_server=settings.smtp_server,
            smtp_port=settings.smtp_port,
            timeout=settings.smtp_timeout,
            sender_name=settings.sender_name,
        )


def create_otp_text(otp: str) -> str:
    return f"Your verification code is: {otp}"


def create_otp_html(otp: str, ttl_minutes: int = 5) -> str:
    """Create a styled HTML email for OTP verification"""
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: auto; padding: 24px;">
        <h3 style="color: #2c3e50;">Your OTP</h3>
        <div style="font-size: 22px; background: #f4f4f4; padding: 10px; letter-spacing: 4px;">{otp}</div>
        <p style="font-size: 14px; color: #7f8c8d;">Expires in {ttl_minutes} minutes</p>
        <p style="font-size: 12px; color: #bdc3c7;">If you didn't request this code, you can safely ignore this email.</p>
    </div>
    """


class OtpMailer:
    """SMTP delivery for one-time passcodes.

    Every send is a single attempt to a single recipient; the caller decides
    what a failed delivery means for the request.
    """

    def __init__(
        self,
        config: Optional[EmailConfig] = None,
        email_user: Optional[str] = None,
        email_pass: Optional[str] = None,
    ):
        self.email_user = email_user
        self.email_pass = email_pass
        self.config = config or EmailConfig()

    @classmethod
    def from_settings(cls, settings: Settings) -> "OtpMailer":
        return cls(
            config=EmailConfig.from_settings(settings),
            email_user=settings.email_user,
            email_pass=settings.email_pass,
        )

    @property
    def configured(self) -> bool:
        return bool(self.email_user and self.email_pass)

    def send_otp(self, to_email: str, otp: str, ttl_minutes: int = 5) -> Dict:
        """Send the OTP email with a plain text and an HTML part"""
        return self.send_email(
            to_email=to_email,
            subject=OTP_SUBJECT,
            text_body=create_otp_text(otp),
            html_body=create_otp_html(otp, ttl_minutes),
        )

    def send_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> Dict[str, Union[bool, str, List[str]]]:
        """Send one email; failures are reported in the result, never raised"""
        try:
            if not self.configured:
                raise ValueError(
                    "EMAIL_USER and EMAIL_PASS must be set in environment variables"
                )
            if not self._is_valid_email(to_email):
                raise ValueError(f"Invalid email address: {to_email!r}")

            msg = self._create_message(to_email, subject, text_body, html_body)
            self._send_once(msg, [to_email])

            logger.info(f"✅ Email sent successfully to {to_email}")
            return {
                "success": True,
                "timestamp": datetime.now().isoformat(),
                "recipients": [to_email],
                "subject": subject,
                "message_id": msg.get("Message-ID"),
            }

        except Exception as e:
            logger.error(f"❌ Email sending failed: {str(e)}")
            return {
                "success": False,
                "error": str(e),
                "timestamp": datetime.now().isoformat(),
            }

    def _create_message(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> MIMEMultipart:
        """Create email message with headers"""
        msg = MIMEMultipart("alternative")

        sender_name = self.config.sender_name
        msg["From"] = (
            formataddr((sender_name, self.email_user))
            if sender_name
            else self.email_user
        )
        msg["To"] = to_email
        msg["Subject"] = subject
        msg["Date"] = email.utils.formatdate(localtime=True)
        msg["Message-ID"] = email.utils.make_msgid()

        # Clients render the last alternative they support
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        return msg

    def _send_once(self, msg: MIMEMultipart, recipients: List[str]) -> None:
        context = ssl.create_default_context()
        with smtplib.SMTP(
            self.config.smtp_server,
            self.config.smtp_port,
            timeout=self.config.timeout,
        ) as server:
            if self.config.use_tls:
                server.starttls(context=context)
            server.login(self.email_user, self.email_pass)
            server.send_message(msg, to_addrs=recipients)

    def _is_valid_email(self, address: Optional[str]) -> bool:
        """Basic email validation, one address only"""
        if not isinstance(address, str):
            return False
        pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
        return re.fullmatch(pattern, address) is not None
