"""
Transactional email for orders.

Sending is best effort: callers go through ``dispatch``, which never raises.
A failed send is logged and lost, there is no retry queue.
"""
import os
import smtplib
import logging
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Protocol

from errors import NotificationError
from schemas import format_address

logger = logging.getLogger("storefront.notifications")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", "orders@storefront.local")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
STORE_NAME = os.getenv("STORE_NAME", "Storefront")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "PKR")

CUSTOMER_CONFIRMATION = "customer_order_confirmation"
ADMIN_NEW_ORDER = "admin_new_order_alert"
DELIVERY_CONFIRMATION = "delivery_confirmation"


def format_money(amount: Any) -> str:
    return f"{PRIMARY_CURRENCY} {float(amount or 0):,.2f}"


class Notifier(Protocol):
    def send_customer_order_confirmation(self, order: Dict[str, Any]) -> None:
        ...

    def send_admin_new_order_alert(self, order: Dict[str, Any]) -> None:
        ...

    def send_delivery_confirmation(self, order: Dict[str, Any]) -> None:
        ...


def _item_lines(order: Dict[str, Any]) -> List[str]:
    lines = []
    for item in order.get("items", []):
        color = f" ({item['color']})" if item.get("color") else ""
        lines.append(f"  - {item['name']}{color} x{item['quantity']} @ {format_money(item['price'])}")
    return lines


def render_order_summary(order: Dict[str, Any]) -> str:
    shipping = order.get("shipping_fee", 0)
    lines = [
        f"Tracking ID: {order.get('tracking_id')}",
        f"Name: {order.get('name')}",
        f"Phone: {order.get('phone')}",
        f"Address: {format_address(order.get('address'))}",
        "",
        "Items:",
        *_item_lines(order),
        "",
        f"Subtotal: {format_money(order.get('subtotal', 0))}",
        f"Shipping: {'FREE' if not shipping else format_money(shipping)}",
        f"Total: {format_money(order.get('total', 0))}",
        f"Payment: {'Cash on Delivery' if order.get('payment_method') == 'cod' else 'Online Payment'}",
    ]
    if order.get("notes"):
        lines.append(f"Notes: {order['notes']}")
    return "\n".join(lines)


def build_message(event: str, order: Dict[str, Any]) -> Optional[EmailMessage]:
    """Build the email for ``event``, or None when it has no recipient."""
    msg = EmailMessage()
    msg["From"] = MAIL_FROM
    summary = render_order_summary(order)

    if event == CUSTOMER_CONFIRMATION:
        if not order.get("email"):
            return None
        msg["To"] = order["email"]
        msg["Subject"] = f"{STORE_NAME}: order {order['tracking_id']} received"
        msg.set_content(f"Hi {order.get('name')},\n\nThanks for your order.\n\n{summary}\n")
    elif event == ADMIN_NEW_ORDER:
        if not ADMIN_EMAIL:
            return None
        msg["To"] = ADMIN_EMAIL
        msg["Subject"] = f"New order {order['tracking_id']} from {order.get('name')}"
        msg.set_content(summary)
    elif event == DELIVERY_CONFIRMATION:
        if not order.get("email"):
            return None
        msg["To"] = order["email"]
        msg["Subject"] = f"{STORE_NAME}: order {order['tracking_id']} delivered"
        msg.set_content(f"Hi {order.get('name')},\n\nYour order has been delivered.\n\n{summary}\n")
    else:
        raise ValueError(f"Unknown notification event: {event}")
    return msg


class SmtpNotifier:
    def __init__(self, host: str, port: int = 587, user: Optional[str] = None, password: Optional[str] = None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def _send(self, event: str, order: Dict[str, Any]) -> None:
        msg = build_message(event, order)
        if msg is None:
            logger.info("No recipient for %s on order %s, skipped", event, order.get("tracking_id"))
            return
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(event, str(e)) from e
        logger.info("Sent %s for order %s to %s", event, order.get("tracking_id"), msg["To"])

    def send_customer_order_confirmation(self, order: Dict[str, Any]) -> None:
        self._send(CUSTOMER_CONFIRMATION, order)

    def send_admin_new_order_alert(self, order: Dict[str, Any]) -> None:
        self._send(ADMIN_NEW_ORDER, order)

    def send_delivery_confirmation(self, order: Dict[str, Any]) -> None:
        self._send(DELIVERY_CONFIRMATION, order)


class LogNotifier:
    """Used when no SMTP server is configured."""

    def _log(self, event: str, order: Dict[str, Any]) -> None:
        msg = build_message(event, order)
        if msg is not None:
            logger.info("[mail disabled] %s to %s: %s", event, msg["To"], msg["Subject"])

    def send_customer_order_confirmation(self, order: Dict[str, Any]) -> None:
        self._log(CUSTOMER_CONFIRMATION, order)

    def send_admin_new_order_alert(self, order: Dict[str, Any]) -> None:
        self._log(ADMIN_NEW_ORDER, order)

    def send_delivery_confirmation(self, order: Dict[str, Any]) -> None:
        self._log(DELIVERY_CONFIRMATION, order)


def default_notifier() -> Notifier:
    if SMTP_HOST:
        return SmtpNotifier(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD)
    return LogNotifier()


def dispatch(notifier: Notifier, event: str, order: Dict[str, Any]) -> bool:
    """Send one notification. Failures are logged and reported as False."""
    send = {
        CUSTOMER_CONFIRMATION: notifier.send_customer_order_confirmation,
        ADMIN_NEW_ORDER: notifier.send_admin_new_order_alert,
        DELIVERY_CONFIRMATION: notifier.send_delivery_confirmation,
    }[event]
    try:
        send(order)
        return True
    except Exception as e:
        logger.error("NOTIFICATION_FAILED %s for order %s: %s", event, order.get("tracking_id"), e)
        return False
