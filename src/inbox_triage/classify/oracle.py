"""LLM classification oracle over an OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import openai
from openai import OpenAI

from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.exceptions import (
    MalformedResponseError,
    NonRetryableOracleError,
    OracleError,
    RateLimitError,
)
from inbox_triage.core.models import Category, MailRecord

logger = logging.getLogger(__name__)

ORACLE_CATEGORIES = [c for c in Category if c is not Category.UNCATEGORIZED]

SYSTEM_PROMPT = "You are an expert email classifier. Respond ONLY with valid JSON."

_RESPONSE_KEYS = ("categories", "emails", "results")
_BODY_PREVIEW_CHARS = 200


def build_prompt(batch: Sequence[MailRecord]) -> str:
    """Instruction asking for exactly one category per numbered email."""
    names = ", ".join(c.value for c in ORACLE_CATEGORIES)
    lines = [
        f"{i}. Subject: {r.subject or 'No Subject'} | From: {r.sender or 'Unknown'}"
        f" | Body: {r.body[:_BODY_PREVIEW_CHARS]}"
        for i, r in enumerate(batch, start=1)
    ]
    return (
        f"Categorize each email into exactly ONE of these categories:\n[{names}]\n\n"
        "Emails:\n" + "\n".join(lines) + "\n\n"
        f"Return ONLY a JSON object with one entry per email, in the same order "
        f"({len(batch)} entries):\n"
        '{"categories": [{"index": 1, "category": "Interested"}, '
        '{"index": 2, "category": "Spam"}]}'
    )


def parse_category_list(text: str) -> list[Any]:
    """Extract the list of category entries from a model response.

    Accepts a bare JSON array, an object wrapping the array under a known key,
    or free text containing a bracket-delimited array.

    Raises:
        MalformedResponseError: If no list can be recovered.
    """
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        start, end = text.find("["), text.rfind("]")
        if start == -1 or end <= start:
            raise MalformedResponseError(f"Could not parse response: {text[:100]!r}")
        try:
            parsed = json.loads(text[start : end + 1])
        except ValueError as e:
            raise MalformedResponseError(f"Could not parse embedded array: {e}") from e

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in _RESPONSE_KEYS:
            if isinstance(parsed.get(key), list):
                return parsed[key]
    raise MalformedResponseError(f"Response holds no category list: {text[:100]!r}")


def _entry_category(entry: Any) -> Category:
    if isinstance(entry, dict):
        return Category.parse(entry.get("category"))
    return Category.parse(entry)


class OpenAIOracle:
    """Classifies a batch of records with one chat completion call."""

    def __init__(
        self,
        client: OpenAI,
        model: str,
        *,
        temperature: float = 0.1,
        max_tokens: int = 1000,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: InboxTriageSettings) -> OpenAIOracle | None:
        """Build the oracle, or None when no API key is configured."""
        if not settings.oracle_api_key:
            logger.info("No oracle API key configured; using rule-based classification only")
            return None
        client = OpenAI(
            api_key=settings.oracle_api_key,
            base_url=settings.oracle_base_url,
            max_retries=0,
        )
        return cls(
            client,
            settings.oracle_model,
            temperature=settings.oracle_temperature,
            max_tokens=settings.oracle_max_tokens,
        )

    def classify(self, batch: Sequence[MailRecord]) -> list[Category]:
        """Return one category per record, same length and order as ``batch``.

        Raises:
            RateLimitError: On a 429 from the API.
            NonRetryableOracleError: On model/capability/auth rejection or a
                response with the wrong number of entries.
            OracleError: On transient failures, including malformed output.
        """
        try:
            completion = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(batch)},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            raise RateLimitError(f"Oracle rate limited: {e}") from e
        except (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            openai.NotFoundError,
            openai.BadRequestError,
            openai.UnprocessableEntityError,
        ) as e:
            raise NonRetryableOracleError(f"Oracle rejected request: {e}") from e
        except openai.APIError as e:
            raise OracleError(f"Oracle call failed: {e}") from e

        text = completion.choices[0].message.content if completion.choices else None
        entries = parse_category_list(text or "")
        if len(entries) != len(batch):
            raise NonRetryableOracleError(
                f"Oracle returned {len(entries)} categories for {len(batch)} emails"
            )
        return [_entry_category(entry) for entry in entries]
