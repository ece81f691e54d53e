import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = "email_service"
PORT = int(os.getenv("EMAIL_SERVICE_PORT", "5003"))

SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_START_TLS = os.getenv("SMTP_START_TLS", "true").lower() in ("true", "1", "t", "yes")

FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@urlshortener.com")
APP_NAME = os.getenv("APP_NAME", "URL Shortener")

# URL confirmation mails are opt-in.
SEND_URL_CREATED_EMAILS = os.getenv("SEND_URL_CREATED_EMAILS", "false").lower() in ("true", "1", "t", "yes")
