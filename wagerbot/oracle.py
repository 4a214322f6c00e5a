"""
Outcome oracle for deciding bets after their deadline using Perplexity.

The oracle returns exactly one of three verdicts. A failed query or any
answer outside the recognized tokens is reported as None so the caller leaves
the bet untouched and asks again on the next tick.
"""

import json
import logging
from typing import Optional

import requests
from requests.exceptions import RequestException, Timeout, ConnectionError

from wagerbot.config import Config
from wagerbot.models import Outcome

# Configure module logger
logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are an impartial betting outcome resolver. Based on the resolution criteria "
    "and the available information, determine if the bet should be marked as won by "
    "participant 1, won by participant 2, or inconclusive. Return ONLY "
    '"PARTICIPANT1_WIN", "PARTICIPANT2_WIN", or "INCONCLUSIVE".'
)


class OutcomeOracle:
    """Ternary outcome classifier backed by the Perplexity chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or Config.PERPLEXITY_API_KEY
        self.api_url = api_url or Config.PERPLEXITY_API_URL
        self.model = model or Config.PERPLEXITY_MODEL
        self.timeout = timeout or Config.ORACLE_TIMEOUT
        self.session = session or requests.Session()

    def determine_outcome(self, resolution_criteria: str) -> Optional[Outcome]:
        """
        Ask the reasoning service for the verdict of a bet.

        Only call this once the bet's deadline has passed.

        Args:
            resolution_criteria: Free-text resolution criteria of the bet

        Returns:
            The recognized Outcome, or None if the verdict is indeterminate this cycle
        """
        if not self.api_key:
            logger.error("PERPLEXITY_API_KEY not configured")
            return None

        response_text = self._call_perplexity_api(resolution_criteria)
        if response_text is None:
            return None

        outcome = parse_outcome(response_text)
        if outcome is None:
            logger.warning(f"Unrecognized oracle verdict: {response_text[:100]!r}")
        else:
            logger.info(f"Oracle verdict: {outcome.value}")
        return outcome

    def _call_perplexity_api(self, resolution_criteria: str) -> Optional[str]:
        """
        Call Perplexity API with the resolution prompt.

        Args:
            resolution_criteria: Bet resolution criteria

        Returns:
            Response text from API, or None on failure
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": SYSTEM_PROMPT
                },
                {
                    "role": "user",
                    "content": (
                        f"Resolution criteria: {resolution_criteria}\n\n"
                        "Please determine the outcome based on publicly available information."
                    )
                }
            ],
            "temperature": Config.PERPLEXITY_TEMPERATURE,
            "max_tokens": Config.PERPLEXITY_MAX_TOKENS,
        }

        try:
            logger.debug(f"Calling Perplexity API with model {self.model}")

            response = self.session.post(
                self.api_url,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )

            response.raise_for_status()

            data = response.json()

            if "choices" in data and len(data["choices"]) > 0:
                message = data["choices"][0].get("message", {})
                content = message.get("content", "")

                if content:
                    return content

            logger.warning("Unexpected Perplexity API response structure")
            logger.debug(f"Response data: {json.dumps(data, indent=2)[:500]}")
            return None

        except Timeout:
            logger.error(f"Perplexity API request timed out after {self.timeout}s")
            return None

        except ConnectionError as e:
            logger.error(f"Connection error calling Perplexity API: {e}")
            return None

        except RequestException as e:
            logger.error(f"Perplexity API request failed: {e}")
            if e.response is not None:
                logger.error(f"Response status: {e.response.status_code}")
            return None

        except ValueError as e:
            logger.error(f"Perplexity API returned invalid JSON: {e}")
            return None


def parse_outcome(text: str) -> Optional[Outcome]:
    """
    Map a raw oracle answer to an Outcome.

    Surrounding whitespace, quotes and backticks are ignored; anything else
    must match a token exactly.

    Args:
        text: Raw answer text

    Returns:
        Outcome, or None if the answer is not exactly one recognized token
    """
    if not isinstance(text, str):
        return None

    token = text.strip().strip("\"'`").strip()
    try:
        return Outcome(token)
    except ValueError:
        return None
