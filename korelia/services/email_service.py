"""
Transactional email for the Korelia storefront.

Renders Jinja2 templates (templates/emails/) into a MIME message and hands
it to the app's NotificationQueue, which delivers over SMTP with retries.
Nothing here ever raises into the caller because of a delivery problem.

Usage:
    from korelia.services.email_service import send_email

    send_email(
        to="customer@example.com",
        subject="Hello",
        template="emails/welcome.html",
        context={"name": "Jane"},
    )
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import quote

from flask import current_app, render_template

from korelia.services.notification_queue import (
    NotificationQueue,
    NotificationSkipped,
    get_notification_queue,
)

logger = logging.getLogger(__name__)


class SmtpTransport:
    """Send one MIME message over SMTP with STARTTLS."""

    def __init__(self, config):
        self.host = config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        self.port = config.get("MAIL_SMTP_PORT", 587)
        self.username = config.get("MAIL_USERNAME")
        self.password = config.get("MAIL_PASSWORD")

    def __call__(self, msg):
        if not self.username or not self.password:
            raise NotificationSkipped("MAIL_USERNAME or MAIL_PASSWORD not configured")
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(self.username, self.password)
            server.send_message(msg)


def init_notifications(app):
    """Create the app's notification queue and register it on app.extensions."""
    cfg = app.config
    notifications = NotificationQueue(
        SmtpTransport(cfg),
        max_attempts=cfg["MAIL_MAX_ATTEMPTS"],
        base_delay=cfg["MAIL_RETRY_BASE_DELAY"],
        max_delay=cfg["MAIL_RETRY_MAX_DELAY"],
        run_async=cfg["MAIL_ASYNC"],
    )
    app.extensions["notification_queue"] = notifications
    return notifications


def build_message(to, subject, html_body, text_body=None, reply_to=None):
    app = current_app._get_current_object()
    from_name = app.config.get("MAIL_FROM_NAME", "Korelia")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)
    if reply_to:
        msg["Reply-To"] = reply_to

    if text_body:
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


def send_email(to, subject, template, context=None, text_template=None, reply_to=None):
    """
    Send a templated email through the notification queue.

    Args:
        to:             Recipient email address (str or list).
        subject:        Email subject line.
        template:       Path to the Jinja2 HTML template (relative to templates/).
        context:        Dict of variables to pass to the templates.
        text_template:  Optional plain-text alternative template.
        reply_to:       Optional reply-to address.
    """
    context = context or {}
    html_body = render_template(template, **context)
    text_body = render_template(text_template, **context) if text_template else None
    msg = build_message(to, subject, html_body, text_body, reply_to)
    get_notification_queue().enqueue(msg)


# ──────────────────────────────────────────────
# Storefront messages
# ──────────────────────────────────────────────

def send_order_confirmation(order):
    to = order.get("email")
    if not to:
        logger.warning(f"Order {order.get('id')} has no email; confirmation not sent")
        return
    send_email(
        to=to,
        subject=f"Order confirmation {order['id']}",
        template="emails/order_confirmation.html",
        text_template="emails/order_confirmation.txt",
        context={"order": order},
    )


def send_verification_email(user, raw_token):
    api_url = current_app.config["API_URL"]
    link = f"{api_url}/auth/verify-email?token={quote(raw_token)}"
    send_email(
        to=user["email"],
        subject="Verify your email address",
        template="emails/verify_email.html",
        context={"name": user.get("name") or "", "link": link},
    )


def send_password_reset_email(email, raw_token):
    client_url = current_app.config["CLIENT_URL"]
    link = f"{client_url}/reset?token={quote(raw_token)}"
    send_email(
        to=email,
        subject="Reset your password",
        template="emails/password_reset.html",
        context={"link": link},
    )


def send_review_thanks(to, name, product_name, points_awarded):
    if not to:
        return
    send_email(
        to=to,
        subject=f"Thank you for reviewing {product_name}",
        template="emails/review_thanks.html",
        context={"name": name or "", "product_name": product_name, "points_awarded": points_awarded},
    )
