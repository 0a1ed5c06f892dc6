"""
Outbound email tests.
"""

import smtplib
from unittest.mock import patch

from blockwatch.server.config import Settings
from blockwatch.server.mailer import Mailer


def test_log_mode_never_sends(caplog):
    with patch("smtplib.SMTP") as smtp:
        with caplog.at_level("INFO"):
            assert Mailer().send("a@b.co", "Subject line", "secret link") is False
    smtp.assert_not_called()
    assert "Subject line" in caplog.text
    assert "secret link" not in caplog.text


def test_smtp_mode_sends():
    mailer = Mailer(mode="smtp", smtp_host="smtp.test", smtp_port=2525, smtp_user="u", smtp_pass="p")
    with patch("smtplib.SMTP") as smtp:
        assert mailer.send("a@b.co", "Hi", "body") is True
    smtp.assert_called_once_with("smtp.test", 2525, timeout=10)
    session = smtp.return_value.__enter__.return_value
    session.login.assert_called_once_with("u", "p")
    session.send_message.assert_called_once()


def test_smtp_without_host_logs(caplog):
    with patch("smtplib.SMTP") as smtp:
        assert Mailer(mode="smtp").send("a@b.co", "Hi", "body") is False
    smtp.assert_not_called()
    assert "SMTP host not configured" in caplog.text


def test_smtp_failure_falls_back():
    mailer = Mailer(mode="smtp", smtp_host="smtp.test")
    with patch("smtplib.SMTP", side_effect=smtplib.SMTPException("refused")):
        assert mailer.send("a@b.co", "Hi", "body") is False


def test_from_settings():
    settings = Settings.from_env({
        "BLOCKWATCH_DB_PATH": "/tmp/bw.db",
        "BLOCKWATCH_JWT_SECRET": "s" * 40,
        "BLOCKWATCH_EMAIL_MODE": "SMTP",
        "BLOCKWATCH_EMAIL_FROM": "noreply@bw.test",
        "SMTP_HOST": "mail.bw.test",
        "SMTP_PORT": "465",
    })
    mailer = Mailer.from_settings(settings)
    assert mailer.mode == "smtp"
    assert mailer.sender == "noreply@bw.test"
    assert (mailer.smtp_host, mailer.smtp_port) == ("mail.bw.test", 465)
