"""
BLOCKWATCH — Outbound email

Modes (Settings.email_mode / BLOCKWATCH_EMAIL_MODE):
  smtp — SMTP via Settings.smtp_*; falls back to log on failure
  log  — log only (default / dev)
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText

from blockwatch.server.config import Settings

log = logging.getLogger(__name__)


class Mailer:
    def __init__(self, mode: str = "log", sender: str = "support@blockwatch.local",
                 smtp_host: str = "", smtp_port: int = 587,
                 smtp_user: str = "", smtp_pass: str = ""):
        self.mode = mode.lower()
        self.sender = sender
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            mode=settings.email_mode,
            sender=settings.email_from,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_pass=settings.smtp_pass,
        )

    def send(self, to: str, subject: str, body: str) -> bool:
        """Best-effort delivery. Returns True if handed to an SMTP server."""
        if self.mode == "smtp":
            if not self.smtp_host:
                log.error("SMTP host not configured; falling back to log")
            else:
                msg = MIMEText(body)
                msg["Subject"] = subject
                msg["From"] = self.sender
                msg["To"] = to
                try:
                    with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as s:
                        s.starttls()
                        if self.smtp_user:
                            s.login(self.smtp_user, self.smtp_pass)
                        s.send_message(msg)
                    return True
                except (smtplib.SMTPException, OSError) as e:
                    log.error("SMTP send failed: %s; falling back to log", e)

        # Body is not logged: it may carry a reset link.
        log.info("EMAIL [%s → %s] %s", self.sender, to, subject)
        return False
