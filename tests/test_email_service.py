import smtplib
from email import message_from_string

import pytest

from familyhub.service import email as email_module
from familyhub.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        base_url="https://hub.example.com/",
    )


def _sent_message(smtp):
    (server,) = smtp.instances
    (from_addr, to_addr, raw), = server.sent
    return server, from_addr, to_addr, message_from_string(raw)


def test_unconfigured_service_logs_instead_of_sending(smtp):
    service = EmailService()
    assert not service.is_configured
    assert service.send_email_verification("owner@example.com", "tok") is True
    assert smtp.instances == []


def test_verification_mail_contains_link(smtp, service):
    assert service.send_email_verification("owner@example.com", "abc123", "de") is True

    server, from_addr, to_addr, message = _sent_message(smtp)
    assert server.started_tls
    assert server.logged_in == ("mailer@example.com", "pw")
    assert from_addr == "mailer@example.com"
    assert to_addr == "owner@example.com"
    assert message["Subject"] == "Bestaetige deine E-Mail-Adresse"
    text = message.get_payload()[0].get_payload(decode=True).decode()
    assert "https://hub.example.com/verify-email?token=abc123" in text


def test_reset_link_and_english_fallback(smtp, service):
    service.send_password_reset("owner@example.com", "r-tok", "fr")
    _, _, _, message = _sent_message(smtp)
    assert message["Subject"] == "Reset your password"
    html_part = message.get_payload()[1].get_payload(decode=True).decode()
    assert "https://hub.example.com/reset-password?token=r-tok" in html_part


def test_provider_label_in_link_notice(smtp, service):
    service.send_account_linked("owner@example.com", "microsoft")
    _, _, _, message = _sent_message(smtp)
    text = message.get_payload()[0].get_payload(decode=True).decode()
    assert "Microsoft sign-in has been linked" in text


def test_smtp_failure_returns_false(monkeypatch, service):
    class BrokenSMTP(FakeSMTP):
        def sendmail(self, *args):
            raise smtplib.SMTPException("boom")

    monkeypatch.setattr(email_module.smtplib, "SMTP", BrokenSMTP)
    assert service.send_two_factor_enabled("owner@example.com") is False


def test_connection_failure_returns_false(monkeypatch, service):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no smtp")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    assert service.send_two_factor_disabled("owner@example.com") is False
