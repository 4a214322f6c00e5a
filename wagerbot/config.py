"""
Configuration management for the wager settlement worker.

This module handles all configuration loading from environment variables
and provides type-safe access to configuration values throughout the application.
"""

import os
import re
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """
    Centralized configuration class for the settlement worker.

    All configuration values are loaded from environment variables with
    sensible defaults where appropriate. Credentials and endpoints must be
    provided via environment variables; the worker refuses to start without them.
    """

    # Signer account and delegated-signing gateway (required)
    NEAR_ACCOUNT_ID: Optional[str] = os.getenv("NEAR_ACCOUNT_ID")
    SIGNER_API_URL: Optional[str] = os.getenv("SIGNER_API_URL")
    SIGNER_API_KEY: Optional[str] = os.getenv("SIGNER_API_KEY")
    SIGNATURE_KEY_VERSION: int = int(os.getenv("SIGNATURE_KEY_VERSION", "0"))

    # Settlement chain (required)
    SETTLEMENT_RPC_URL: Optional[str] = os.getenv("SETTLEMENT_RPC_URL")
    USDC_CONTRACT_ADDRESS: Optional[str] = os.getenv("USDC_CONTRACT_ADDRESS")
    ESCROW_DERIVATION_PATH: Optional[str] = os.getenv("ESCROW_DERIVATION_PATH")
    SETTLEMENT_CHAIN_NAMESPACE: str = os.getenv("SETTLEMENT_CHAIN_NAMESPACE", "base")
    TOKEN_DECIMALS: int = int(os.getenv("TOKEN_DECIMALS", "6"))
    TOKEN_SYMBOL: str = os.getenv("TOKEN_SYMBOL", "USDC")

    # Outcome oracle (required)
    PERPLEXITY_API_KEY: Optional[str] = os.getenv("PERPLEXITY_API_KEY")
    PERPLEXITY_API_URL: str = os.getenv(
        "PERPLEXITY_API_URL",
        "https://api.perplexity.ai/chat/completions"
    )
    PERPLEXITY_MODEL: str = os.getenv("PERPLEXITY_MODEL", "sonar")
    PERPLEXITY_TEMPERATURE: float = float(os.getenv("PERPLEXITY_TEMPERATURE", "0.0"))
    PERPLEXITY_MAX_TOKENS: int = int(os.getenv("PERPLEXITY_MAX_TOKENS", "16"))

    # Request Timeouts (seconds)
    API_TIMEOUT: int = int(os.getenv("API_TIMEOUT", "30"))
    ORACLE_TIMEOUT: int = int(os.getenv("ORACLE_TIMEOUT", "60"))
    BROADCAST_TIMEOUT: int = int(os.getenv("BROADCAST_TIMEOUT", "30"))

    # Reconciliation Loop
    POLL_INTERVAL_SECONDS: int = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))
    MAX_CONCURRENT_BETS: int = int(os.getenv("MAX_CONCURRENT_BETS", "4"))
    SCHEDULER_TIMEZONE: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")

    # Database Configuration
    DB_PATH: Path = Path(os.getenv("DB_PATH", "data/wagerbot.db"))

    # Telegram Configuration (optional)
    TELEGRAM_BOT_TOKEN: Optional[str] = os.getenv("TELEGRAM_BOT_TOKEN")
    TELEGRAM_CHAT_ID: Optional[str] = os.getenv("TELEGRAM_CHAT_ID")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[Path] = Path(os.getenv("LOG_FILE", "logs/wagerbot.log")) if os.getenv("LOG_FILE") else None

    @classmethod
    def validate(cls) -> tuple[bool, list[str]]:
        """
        Validate that all required configuration values are present.

        Returns:
            tuple: (is_valid, list_of_errors)
        """
        errors: list[str] = []

        required = {
            "NEAR_ACCOUNT_ID": cls.NEAR_ACCOUNT_ID,
            "SIGNER_API_URL": cls.SIGNER_API_URL,
            "SETTLEMENT_RPC_URL": cls.SETTLEMENT_RPC_URL,
            "USDC_CONTRACT_ADDRESS": cls.USDC_CONTRACT_ADDRESS,
            "ESCROW_DERIVATION_PATH": cls.ESCROW_DERIVATION_PATH,
            "PERPLEXITY_API_KEY": cls.PERPLEXITY_API_KEY,
        }
        for name, value in required.items():
            if not value:
                errors.append(f"{name} is required but not set")

        if cls.USDC_CONTRACT_ADDRESS and not re.fullmatch(r"0x[0-9a-fA-F]{40}", cls.USDC_CONTRACT_ADDRESS):
            errors.append("USDC_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")

        # Validate numeric ranges
        if cls.POLL_INTERVAL_SECONDS < 1:
            errors.append("POLL_INTERVAL_SECONDS must be at least 1")

        if cls.MAX_CONCURRENT_BETS < 1:
            errors.append("MAX_CONCURRENT_BETS must be at least 1")

        if cls.TOKEN_DECIMALS < 0:
            errors.append("TOKEN_DECIMALS cannot be negative")

        for name in ("API_TIMEOUT", "ORACLE_TIMEOUT", "BROADCAST_TIMEOUT"):
            if getattr(cls, name) <= 0:
                errors.append(f"{name} must be positive")

        if not (0.0 <= cls.PERPLEXITY_TEMPERATURE <= 1.0):
            errors.append("PERPLEXITY_TEMPERATURE must be between 0.0 and 1.0")

        return (len(errors) == 0, errors)

    @classmethod
    def ensure_directories(cls) -> None:
        """
        Ensure all required directories exist.

        Creates directories for the database and logs if they don't exist.
        """
        cls.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        if cls.LOG_FILE:
            cls.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
