# email_service/mailer.py

import logging
from email.message import EmailMessage

import aiosmtplib

from email_service import config

logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    """Raised when the SMTP server does not accept a message."""


class Mailer:
    """
    Sends the transactional notification mails over SMTP using aiosmtplib.
    Delivery failures raise MailDeliveryError so the triggering event is
    dead-lettered instead of silently acknowledged.
    """

    def __init__(
        self,
        hostname: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USERNAME,
        password: str = config.SMTP_PASSWORD,
        start_tls: bool = config.SMTP_START_TLS,
        from_email: str = config.FROM_EMAIL,
        app_name: str = config.APP_NAME,
    ):
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.start_tls = start_tls
        self.from_email = from_email
        self.app_name = app_name

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f"{self.app_name} <{self.from_email}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        return message

    async def send(self, to: str, subject: str, body: str):
        message = self.build_message(to, subject, body)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.hostname,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.start_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            raise MailDeliveryError(f"Failed to send email to {to}: {e}") from e
        logger.info(f"Email sent successfully to {to}: '{subject}'")

    async def send_welcome_email(self, email: str, name: str = None):
        await self.send(
            email,
            f"Welcome to {self.app_name}!",
            f"Hi {name or 'User'},\n\nThanks for signing up for {self.app_name}. "
            "You can start shortening links right away.\n",
        )

    async def send_role_update_email(self, email: str, old_role: str, new_role: str):
        await self.send(
            email,
            f"Your role has been updated - {self.app_name}",
            f"Your account role changed from '{old_role}' to '{new_role}'.\n",
        )

    async def send_account_deleted_email(self, email: str):
        await self.send(
            email,
            f"Your account has been deleted - {self.app_name}",
            f"Your {self.app_name} account and its short links have been removed.\n",
        )

    async def send_url_created_email(self, email: str, short_url: str, original_url: str):
        await self.send(
            email,
            f"Your short URL is ready - {self.app_name}",
            f"{short_url} now redirects to {original_url}.\n",
        )
