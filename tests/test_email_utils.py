import smtplib

import pytest

import email_utils
from config import Settings
from email_utils import EmailConfig, OtpMailer


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg, to_addrs=None):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append((msg, to_addrs))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_utils.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def otp_mailer():
    return OtpMailer(EmailConfig(smtp_server="smtp.test", smtp_port=2525), "sender@x.com", "secret")


def test_missing_credentials_fail_without_connecting(fake_smtp):
    mailer = OtpMailer(email_user=None, email_pass=None)

    result = mailer.send_otp("a@x.com", "123456")

    assert not mailer.configured
    assert result["success"] is False
    assert "EMAIL_USER" in result["error"]
    assert fake_smtp.instances == []


def test_from_settings():
    settings = Settings(
        email_user="sender@x.com", email_pass="pw", smtp_server="mail.x.com", smtp_port=465
    )

    mailer = OtpMailer.from_settings(settings)

    assert mailer.config.smtp_server == "mail.x.com"
    assert mailer.config.smtp_port == 465
    assert mailer.config.sender_name == "Unhinged App"


def test_send_otp_builds_text_and_html_parts(fake_smtp, otp_mailer):
    result = otp_mailer.send_otp("a@x.com", "123456")

    assert result["success"] is True
    server = fake_smtp.instances[0]
    assert (server.host, server.port) == ("smtp.test", 2525)
    assert server.started_tls
    assert server.logged_in == ("sender@x.com", "secret")

    msg, to_addrs = server.messages[0]
    assert to_addrs == ["a@x.com"]
    assert msg["Subject"] == "Your OTP Code"
    assert msg["From"] == "Unhinged App <sender@x.com>"
    parts = msg.get_payload()
    assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]
    assert "Your verification code is: 123456" in parts[0].get_payload(decode=True).decode()
    assert "Expires in 5 minutes" in parts[1].get_payload(decode=True).decode()


def test_invalid_address_is_not_sent(fake_smtp, otp_mailer):
    result = otp_mailer.send_otp("not-an-address", "123456")

    assert result["success"] is False
    assert "Invalid email address" in result["error"]
    assert fake_smtp.instances == []


@pytest.mark.parametrize(
    "address", ["victim@x.com,other@y.com", "victim@x.com; other@y.com", " a@x.com"]
)
def test_only_one_recipient_per_message(fake_smtp, otp_mailer, address):
    result = otp_mailer.send_otp(address, "123456")

    assert result["success"] is False
    assert fake_smtp.instances == []


def test_smtp_failure_is_single_attempt(fake_smtp, otp_mailer):
    fake_smtp.fail_with = smtplib.SMTPServerDisconnected("gone")

    result = otp_mailer.send_otp("a@x.com", "123456")

    assert result["success"] is False
    assert "gone" in result["error"]
    assert len(fake_smtp.instances) == 1
