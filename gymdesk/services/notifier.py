"""
Operator Notifications: alerts for the gym operator via the Telegram Bot API.

Used for outcomes that succeed overall but need a human to look at them,
such as a renewal whose reward discount could not be applied.
Failures are logged but NEVER raise exceptions (fire-and-forget).
"""

import logging
from typing import Any

import httpx

from gymdesk.config import settings
from gymdesk.services.money import format_amount

logger = logging.getLogger(__name__)


async def send_message(
    chat_id: int | str,
    text: str,
    parse_mode: str = "HTML",
) -> bool:
    """
    Send a Telegram message via Bot API.

    Args:
        chat_id: Recipient chat ID, or @username of a channel.
        text: Message text (HTML formatting supported).
        parse_mode: Telegram parse mode (default: HTML).

    Returns:
        True if message was sent successfully, False otherwise.
    """
    token = settings.TELEGRAM_BOT_TOKEN
    if not token:
        logger.info("TELEGRAM_BOT_TOKEN not configured, operator alert only logged")
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload: dict[str, Any] = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": parse_mode,
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code == 200:
                logger.info("Operator alert sent: chat_id=%s, text_preview='%s'", chat_id, text[:80])
                return True
            logger.warning(
                "Operator alert failed: chat_id=%s, status=%s, body=%s",
                chat_id,
                resp.status_code,
                resp.text[:200],
            )
            return False
    except Exception as e:
        logger.error("Operator alert error: chat_id=%s, error=%s", chat_id, str(e))
        return False


async def notify_operator(message: str) -> bool:
    """Send an alert to the configured admin chat, if any."""
    admin_id = settings.ADMIN_TELEGRAM_ID
    if not admin_id:
        logger.warning("Operator alert (no ADMIN_TELEGRAM_ID set): %s", message)
        return False
    # Numeric ids are private chats or groups; anything else is passed through as @channel
    chat_id = int(admin_id) if admin_id.lstrip("-").isdigit() else admin_id
    return await send_message(chat_id, f"🔔 <b>Operator Alert</b>\n\n{message}")


# ── Notification Templates ─────────────────────────────────

async def notify_reward_not_applied(
    client_id: str,
    subscription_id: str,
    reward_id: str,
    error: str,
) -> bool:
    """Renewal went through but its reward discount did not."""
    text = (
        "⚠️ <b>Reward not applied</b>\n\n"
        f"Client: <code>{client_id}</code>\n"
        f"New subscription: <code>{subscription_id}</code>\n"
        f"Reward: <code>{reward_id}</code>\n"
        f"Error: {error}\n\n"
        "The renewal stands. Apply the discount manually."
    )
    return await notify_operator(text)


async def notify_payment_rejected(subscription_id: str, amount: int, reason: str) -> bool:
    """Backend refused a payment the desk had already validated."""
    text = (
        "💳 <b>Payment rejected by server</b>\n\n"
        f"Subscription: <code>{subscription_id}</code>\n"
        f"Amount: {format_amount(amount)}\n"
        f"Reason: {reason}"
    )
    return await notify_operator(text)
