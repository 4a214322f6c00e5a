"""
Telegram notifier for bet lifecycle events.

This module formats short plain-text messages for bet events and delivers
them with the python-telegram-bot library. Delivery is fire-and-forget:
failures are logged and reported as False, never raised.
"""

import asyncio
import logging
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError, TimedOut, NetworkError

from wagerbot.config import Config
from wagerbot.models import Bet, Outcome
from wagerbot.utils import format_token_amount

# Configure module logger
logger = logging.getLogger(__name__)


def _amount(units: int) -> str:
    return format_token_amount(units, Config.TOKEN_DECIMALS, Config.TOKEN_SYMBOL)


def format_bet_created(bet_id: int, challenger: str, challenged: str, address1: str,
                       address2: str, amount: int, deadline_hours: float) -> str:
    return (
        f"@{challenger} @{challenged} Bet created! (ID: {bet_id})\n\n"
        f"Challenger deposit address:\n{address1}\n\n"
        f"Challenged deposit address:\n{address2}\n\n"
        f"Amount: {_amount(amount)}\n"
        f"Deadline: {deadline_hours:g}h"
    )


def format_bet_funded(bet: Bet) -> str:
    return (
        f"Bet #{bet.id} is fully funded! Both players have deposited {_amount(bet.amount)}. "
        f"The bet is now live and will be resolved after {bet.deadline.strftime('%Y-%m-%d %H:%M UTC')}."
    )


def format_partial_funding(bet: Bet, participant: int) -> str:
    funded = "Challenger" if participant == 1 else "Challenged player"
    return (
        f"Update on Bet #{bet.id}: {funded} has funded their position. "
        f"Waiting for the other player to complete funding."
    )


def format_bet_resolved(bet: Bet, outcome: Outcome, tx_hash: str) -> str:
    winner = "1" if outcome == Outcome.PARTICIPANT1_WIN else "2"
    return f"Bet #{bet.id} has been resolved! Participant {winner} wins! Payout tx: {tx_hash}"


def format_bet_refunded(bet: Bet, tx_hashes: list[str]) -> str:
    return (
        f"Bet #{bet.id} outcome is inconclusive based on the resolution criteria. "
        f"Both participants were refunded. Tx hashes: {', '.join(tx_hashes)}"
    )


def format_review_flag(bet_id: int, stage: str, reason: str) -> str:
    return f"Bet #{bet_id} needs operator review ({stage}): {reason}"


def format_apology(requester: Optional[str]) -> str:
    mention = f"@{requester} " if requester else ""
    return f"{mention}Sorry, there was an error creating your bet. Please try again."


async def _deliver(message: str, chat_id) -> None:
    async with Bot(token=Config.TELEGRAM_BOT_TOKEN) as bot:
        await bot.send_message(
            chat_id=chat_id,
            text=message,
            disable_web_page_preview=True,
            read_timeout=Config.API_TIMEOUT,
            write_timeout=Config.API_TIMEOUT,
        )


def send_telegram_message(message: str) -> bool:
    """
    Send a message to Telegram safely with error handling.

    Handles network errors, timeouts, and other Telegram API errors.
    Returns False on any failure, True on success.

    Args:
        message: Message text to send

    Returns:
        True if message sent successfully, False otherwise
    """
    if not Config.TELEGRAM_BOT_TOKEN or not Config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram not configured (missing token or chat_id)")
        return False

    if not message or not message.strip():
        logger.warning("Empty message, not sending")
        return False

    # Parse chat_id (handle both string and int)
    try:
        chat_id = int(Config.TELEGRAM_CHAT_ID)
    except ValueError:
        chat_id = Config.TELEGRAM_CHAT_ID

    try:
        logger.debug(f"Sending message to Telegram chat {chat_id}")
        asyncio.run(_deliver(message, chat_id))
        logger.info("Telegram message sent successfully")
        return True

    except TimedOut:
        logger.error(f"Telegram API request timed out after {Config.API_TIMEOUT}s")
        return False

    except NetworkError as e:
        logger.error(f"Network error sending Telegram message: {e}")
        return False

    except TelegramError as e:
        logger.error(f"Telegram API error: {e}")
        return False

    except RuntimeError as e:
        logger.error(f"Could not run Telegram delivery: {e}")
        return False

    except Exception as e:
        logger.error(f"Unexpected error sending Telegram message: {e}", exc_info=True)
        return False


def send_notification(text: str) -> bool:
    """
    Send a plain text notification.

    Args:
        text: Notification text to send

    Returns:
        True if sent successfully, False otherwise
    """
    if not text or not text.strip():
        logger.warning("Empty notification text, not sending")
        return False

    return send_telegram_message(text)
