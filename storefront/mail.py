"""Outbound mail seam. Delivery itself is handled outside this service."""
import logging

logger = logging.getLogger(__name__)


class LogMailer:
    """Records password reset requests in the log instead of sending mail."""

    def send_password_reset(self, email: str, token: str):
        logger.info("password reset requested for %s", email)


def get_mailer() -> LogMailer:
    return LogMailer()
