"""
Transactional email.

Sends are fire-and-forget: the API schedules them as background tasks and a
failed send is logged, never raised back into the request that triggered it.
Without SMTP_HOST the message is only logged.
"""
import os
import logging
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib

logger = logging.getLogger("tidyhome.notifications")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "10"))
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@tidyhome.local")
STORE_NAME = os.getenv("STORE_NAME", "TidyHome")


async def send_email(to: Optional[str], subject: str, body: str) -> bool:
    if not to:
        return False
    if not SMTP_HOST:
        logger.info("Email to %s skipped (SMTP not configured): %s", to, subject)
        return False
    msg = EmailMessage()
    msg["From"] = MAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    try:
        await aiosmtplib.send(
            msg,
            hostname=SMTP_HOST,
            port=SMTP_PORT,
            username=SMTP_USER or None,
            password=SMTP_PASSWORD if SMTP_USER else None,
            start_tls=True,
            timeout=SMTP_TIMEOUT,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error("Failed to send '%s' to %s: %s", subject, to, e)
        return False
    logger.info("Sent '%s' to %s", subject, to)
    return True


def _order_lines(order: Dict[str, Any]) -> str:
    lines = [f"- {o['name']} x{o['quantity']} ({o['price']})" for o in order.get("selectedOptions", [])]
    lines.append(f"Subtotal: {order.get('totalAmount')}  Tax: {order.get('tax')}  Total: {order.get('grandTotal')} {order.get('currency', '')}")
    return "\n".join(lines)


async def send_order_confirmation(to: Optional[str], order: Dict[str, Any]) -> bool:
    subject = f"{STORE_NAME}: order {order.get('_id')} received"
    body = (
        f"Thanks for booking with {STORE_NAME}.\n\n"
        f"Scheduled for {order.get('scheduledDate')} "
        f"{order['timeSlot']['start']}-{order['timeSlot']['end']}\n\n"
        f"{_order_lines(order)}\n"
    )
    return await send_email(to, subject, body)


async def send_payment_receipt(to: Optional[str], order: Dict[str, Any]) -> bool:
    details = order.get("paymentDetails") or {}
    subject = f"{STORE_NAME}: payment received for order {order.get('_id')}"
    body = (
        f"We received your {order.get('paymentMethod')} payment.\n"
        f"Transaction: {details.get('transactionId') or 'n/a'}\n\n"
        f"{_order_lines(order)}\n"
    )
    return await send_email(to, subject, body)
