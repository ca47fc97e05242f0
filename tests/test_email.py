import smtplib

import pytest

from portfolio_auth.service import email as email_module
from portfolio_auth.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
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

    def sendmail(self, sender, recipient, message):
        self.sent.append((sender, recipient, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, sender, recipient, message):
        raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})


@pytest.fixture(autouse=True)
def clear_instances():
    FakeSMTP.instances = []


def _service(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
        base_url="https://portfolio.example.com",
    )
    options.update(overrides)
    return EmailService(**options)


class TestEmailService:
    def test_unconfigured_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
        service = EmailService()
        assert service.is_configured is False
        assert service.send_admin_setup_email("admin@example.com", "tok") is True
        assert FakeSMTP.instances == []

    def test_sends_over_starttls(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

        assert _service().send_admin_setup_email("admin@example.com", "setup-tok", 12) is True

        server = FakeSMTP.instances[0]
        assert server.started_tls is True
        assert server.logged_in == ("mailer", "pw")
        sender, recipient, message = server.sent[0]
        assert sender == "noreply@example.com"
        assert recipient == "admin@example.com"
        assert "setup-tok" in message
        assert "https://portfolio.example.com/devpanel/setup" in message

    def test_implicit_tls(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
        assert _service(smtp_use_tls=False, smtp_port=465).send_admin_setup_email(
            "admin@example.com", "tok"
        )
        assert FakeSMTP.instances[0].port == 465
        assert FakeSMTP.instances[0].started_tls is False

    def test_smtp_failure_returns_false(self, monkeypatch):
        monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)
        assert _service().send_admin_setup_email("admin@example.com", "tok") is False

    def test_redacts_addresses(self):
        assert EmailService()._redact_email("someone@example.com") == "so***@example.com"
        assert EmailService()._redact_email("nope") == "redacted"
