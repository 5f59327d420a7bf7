"""Notification dispatcher delivering lifecycle events by e-mail."""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from ..domain.models import Customer, NotificationEvent
from ..domain.ports.notifications import NotificationDispatcher
from ..domain.ports.persistence import BillingStore

logger = logging.getLogger(__name__)


def _created(payload: Dict[str, Any]) -> Tuple[str, str]:
    body = f"Your subscription to {payload.get('product_label')} has been created."
    if payload.get("trial_ends_at"):
        body += f" Your trial runs until {payload['trial_ends_at']}."
    return "Subscription created", body


def _renewed(payload: Dict[str, Any]) -> Tuple[str, str]:
    body = (
        f"Your subscription has been renewed for the period "
        f"{payload.get('period_start')} to {payload.get('period_end')}."
    )
    if payload.get("amount"):
        body += f" We received your payment of {payload['amount']} {payload.get('currency')}."
    return "Subscription renewed", body


def _payment_succeeded(payload: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Payment received",
        f"We received your payment of {payload.get('amount')} {payload.get('currency')}.",
    )


def _payment_failed(payload: Dict[str, Any]) -> Tuple[str, str]:
    body = f"We could not collect your payment: {payload.get('reason')}."
    if payload.get("final_attempt"):
        body += " This was the final attempt and your subscription has been cancelled."
    elif payload.get("retry_at"):
        body += f" We will try again on {payload['retry_at']}."
    return "Payment failed", body


def _cancelled(payload: Dict[str, Any]) -> Tuple[str, str]:
    if payload.get("scheduled"):
        body = f"Your subscription will be cancelled at the end of the billing period ({payload.get('effective_at')})."
    else:
        body = "Your subscription has been cancelled."
    if payload.get("reason"):
        body += f" Reason: {payload['reason']}."
    return "Subscription cancelled", body


def _paused(payload: Dict[str, Any]) -> Tuple[str, str]:
    return "Subscription paused", "Your subscription has been paused."


def _resumed(payload: Dict[str, Any]) -> Tuple[str, str]:
    return "Subscription resumed", "Your subscription has been resumed."


def _trial_ending(payload: Dict[str, Any]) -> Tuple[str, str]:
    return (
        f"Your {payload.get('product_label')} trial is ending soon",
        f"Your trial ends on {payload.get('trial_ends_at')}. Billing starts automatically afterwards.",
    )


def _incomplete_expired(payload: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Subscription expired",
        f"Your subscription to {payload.get('product_label')} expired because the first payment was never completed.",
    )


def _status_changed(payload: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Subscription updated",
        f"Your subscription status changed from {payload.get('previous_status')} to {payload.get('status')}.",
    )


_TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "created": _created,
    "renewed": _renewed,
    "payment_succeeded": _payment_succeeded,
    "payment_failed": _payment_failed,
    "cancelled": _cancelled,
    "paused": _paused,
    "resumed": _resumed,
    "trial_ending": _trial_ending,
    "incomplete_expired": _incomplete_expired,
    "status_changed": _status_changed,
}


class EmailNotificationDispatcher(NotificationDispatcher):
    """Sends customer-facing e-mails for lifecycle events via SMTP."""

    def __init__(
        self,
        store: BillingStore,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "Billing",
    ):
        self._store = store
        self.smtp_host = smtp_host or ""
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username or ""
        self.smtp_password = smtp_password or ""
        self.from_email = from_email or ""
        self.from_name = from_name
        self.enabled = bool(self.smtp_host and self.smtp_username and self.from_email)

    def dispatch(self, event: NotificationEvent) -> None:
        template = _TEMPLATES.get(event.event_type)
        if template is None:
            logger.info("Notification %s: %s", event.event_type, event.payload)
            return

        customer = self._resolve_customer(event)
        if customer is None:
            logger.warning(
                "Cannot deliver %s for subscription %s: customer not found",
                event.event_type,
                event.subscription_id,
            )
            return

        subject, body = template(event.payload)
        if not self.enabled:
            logger.info("[EMAIL] %s -> %s: %s", subject, customer.email, body)
            return
        self._send_email(customer.email, subject, body)

    def _resolve_customer(self, event: NotificationEvent) -> Optional[Customer]:
        customer_id = event.payload.get("customer_id")
        if not customer_id and event.subscription_id:
            subscription = self._store.get_subscription(event.subscription_id)
            customer_id = subscription.customer_id if subscription else None
        return self._store.get_customer(customer_id) if customer_id else None

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """
        Send an email via SMTP.

        Args:
            to_email: Recipient email
            subject: Email subject
            text_body: Plain text body

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain", "utf-8"))

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            return True

        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", to_email, exc)
            return False
