# reconciler/services/notifications.py
"""
Notification collaborator. Fire-and-forget from the engine's point of view:
a failed reminder is logged and never blocks a state transition.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

from reconciler.services.email_templates import EmailTemplates

logger = logging.getLogger(__name__)


class NotificationKind:
    WELCOME = "welcome"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RETRY_EXHAUSTED = "payment_retry_exhausted"
    DUNNING_REMINDER = "dunning_reminder"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    UPCOMING_INVOICE = "upcoming_invoice"


class SmtpEmailSender:
    """Deliver rendered templates over SMTP"""

    def __init__(self, host, port, use_tls=True, username=None, password=None,
                 from_email="billing@example.com", timeout=10):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.from_email = from_email
        self.timeout = timeout

    def deliver(self, recipient, subject, html_content):
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = recipient
        msg.attach(MIMEText(html_content, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)


class LogSender:
    """Write notifications to the log instead of delivering them."""

    def deliver(self, recipient, subject, html_content):
        logger.info("Notification (log backend)", extra={"recipient": recipient, "subject": subject})


class NotificationService:
    """Handle all notification logic"""

    def __init__(self, sender):
        self.sender = sender

    def send(self, template_kind, recipient, data=None):
        """
        Render and deliver one notification. Returns True when delivered.
        Never raises.
        """
        if not recipient:
            logger.warning("Notification skipped, no recipient", extra={"template_kind": template_kind})
            return False

        try:
            subject, html = EmailTemplates.render(template_kind, data or {})
            self.sender.deliver(recipient, subject, html)
        except Exception as e:
            logger.error(
                f"Failed to send {template_kind} notification: {e}",
                extra={"template_kind": template_kind, "recipient": recipient},
            )
            return False

        logger.info("Notification sent", extra={"template_kind": template_kind, "recipient": recipient})
        return True


def init_notifications(app):
    if "notification_service" in app.extensions:
        return app.extensions["notification_service"]

    if app.config.get("NOTIFICATION_BACKEND") == "smtp":
        sender = SmtpEmailSender(
            host=app.config.get("SMTP_HOST", "localhost"),
            port=app.config.get("SMTP_PORT", 587),
            use_tls=app.config.get("SMTP_USE_TLS", True),
            username=app.config.get("SMTP_USERNAME"),
            password=app.config.get("SMTP_PASSWORD"),
            from_email=app.config.get("MAIL_DEFAULT_SENDER", "billing@example.com"),
            timeout=app.config.get("SMTP_TIMEOUT", 10),
        )
    else:
        sender = LogSender()

    service = NotificationService(sender)
    app.extensions["notification_service"] = service
    return service


def get_notification_service() -> NotificationService:
    return current_app.extensions["notification_service"]
