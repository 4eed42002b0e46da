# notifier/email_service.py
import logging
import smtplib
import ssl
import threading
from dataclasses import dataclass, field
from email.header import Header
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Callable, List, Optional

from shared.exceptions import ConfigurationError
from notifier import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    secure: bool
    username: str
    password: str = field(repr=False)
    from_address: str
    timeout: float = 30.0

    @classmethod
    def from_config(cls, cfg=config) -> "SmtpSettings":
        """
        Build settings from the service configuration.

        Raises:
            ConfigurationError: if host, port, secure flag or credentials are missing
        """
        required = {
            "EMAIL_HOST": cfg.EMAIL_HOST,
            "EMAIL_PORT": cfg.EMAIL_PORT,
            "EMAIL_SECURE": cfg.EMAIL_SECURE,
            "EMAIL_AUTH_USERNAME": cfg.EMAIL_AUTH_USERNAME,
            "EMAIL_AUTH_PASSWORD": cfg.EMAIL_AUTH_PASSWORD,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"Invalid email sender configs found, missing: {missing}")

        try:
            port = int(str(cfg.EMAIL_PORT).strip())
        except ValueError as e:
            raise ConfigurationError(f"EMAIL_PORT must be an integer, got {cfg.EMAIL_PORT!r}") from e

        return cls(
            host=cfg.EMAIL_HOST,
            port=port,
            secure=str(cfg.EMAIL_SECURE).strip().lower() == "true",
            username=cfg.EMAIL_AUTH_USERNAME,
            password=cfg.EMAIL_AUTH_PASSWORD,
            from_address=cfg.EMAIL_FROM or cfg.EMAIL_AUTH_USERNAME,
            timeout=cfg.EMAIL_TIMEOUT_S,
        )


@dataclass(frozen=True)
class MailEnvelope:
    """An outbound mail: exactly one of ``text`` or ``html`` carries the body."""
    to: List[str]
    subject: str
    text: Optional[str] = None
    html: Optional[str] = None


def build_mime_message(envelope: MailEnvelope, from_address: str) -> MIMEText:
    if envelope.html is not None:
        msg = MIMEText(envelope.html, "html", "utf-8")
    else:
        msg = MIMEText(envelope.text or "", "plain", "utf-8")

    msg["Subject"] = Header(envelope.subject, "utf-8")
    msg["From"] = from_address
    msg["To"] = ", ".join(envelope.to)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    return msg


class SmtpEmailTransport:
    """
    Sends mail through the configured SMTP relay.

    A connection is opened per send so a dropped relay connection never
    poisons later messages.
    """

    def __init__(self, settings: SmtpSettings, smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None,
                 smtp_ssl_factory: Optional[Callable[..., smtplib.SMTP]] = None):
        self.settings = settings
        self._smtp_factory = smtp_factory or smtplib.SMTP
        self._smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _create_smtp_connection(self) -> smtplib.SMTP:
        """Create and configure SMTP connection."""
        s = self.settings
        if s.secure:
            smtp = self._smtp_ssl_factory(s.host, s.port, timeout=s.timeout, context=ssl.create_default_context())
        else:
            smtp = self._smtp_factory(s.host, s.port, timeout=s.timeout)
            try:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()
            except Exception:
                smtp.close()
                raise

        try:
            smtp.login(s.username, s.password)
        except Exception:
            smtp.close()
            raise
        return smtp

    def send(self, envelope: MailEnvelope):
        """
        Deliver one envelope. Blocking.

        Raises:
            smtplib.SMTPException, OSError: on connection, auth or recipient failures
        """
        if self._closed:
            raise smtplib.SMTPServerDisconnected("Email transport has been closed")

        msg = build_mime_message(envelope, self.settings.from_address)
        with self._lock:
            with self._create_smtp_connection() as smtp:
                refused = smtp.send_message(msg, from_addr=self.settings.from_address, to_addrs=list(envelope.to))

        if refused:
            logger.warning(f"Some recipients were refused by the relay: {sorted(refused)}")

    def verify(self) -> bool:
        """
        Test SMTP connection.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            with self._create_smtp_connection():
                logger.info("SMTP connection test successful")
                return True
        except Exception as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False

    def close(self):
        self._closed = True


class EmailTransportRegistry:
    """Owns the single mail transport for the process: ``init`` / ``get`` / ``destroy``."""

    def __init__(self, transport_factory: Callable[[SmtpSettings], SmtpEmailTransport] = SmtpEmailTransport):
        self._transport_factory = transport_factory
        self._transport: Optional[SmtpEmailTransport] = None

    def init(self, settings: Optional[SmtpSettings] = None) -> SmtpEmailTransport:
        """
        Create the transport once.

        Raises:
            ConfigurationError: if no settings are given and the configuration is incomplete
        """
        if self._transport is not None:
            logger.warning("Email transport already initialized, keeping the existing one")
            return self._transport

        settings = settings or SmtpSettings.from_config()
        self._transport = self._transport_factory(settings)
        logger.info(
            f"Email transport initialized for {settings.host}:{settings.port} "
            f"(secure={settings.secure}, from={settings.from_address})"
        )
        return self._transport

    def get(self) -> Optional[SmtpEmailTransport]:
        return self._transport

    def destroy(self):
        transport, self._transport = self._transport, None
        if transport is None:
            logger.info("Not destroying email transport because it is not initialized")
            return
        try:
            transport.close()
            logger.info("Email transport closed")
        except Exception as e:
            logger.error(f"Error closing email transport: {e}")
