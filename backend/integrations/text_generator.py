"""
AI text generation for profile edits.

Bios and prompt answers are written by Claude over the Messages API.
``ClaudeTextGenerator.generate_bio`` and ``generate_prompt`` match the
``BioGenerator``/``PromptGenerator`` callables the vendor client takes,
so the worker plugs them straight into ``HttpVendorClient``.

Prompt answers are published in two forms: the visible line (at most
40 characters) and an obfuscated variant that prefixes a channel handle
and interleaves invisible Unicode tag characters after every character.
"""

import asyncio
import random
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from app.config import get_settings
from core.exceptions import TextGenerationError, ValidationError
from integrations.base import AccountStore

logger = structlog.get_logger(__name__)

PROMPT_MAX_CHARS = 40

# Invisible tag characters interleaved into obfuscated answers
TAG_CHARS = tuple(chr(code) for code in range(0xE0308, 0xE0310))
PREFIX_TAGS = 4
TEXT_TAGS = 1

# Greek alpha (U+03B1) in place of the latin "a"
CHANNEL_PREFIXES = {
    "snap": "Snαp;",
    "gram": "Grαm;",
}

BIO_SYSTEM_PROMPT = (
    "You write dating profile bios. Every bio reads like a real person typed it: "
    "all lowercase, casual, a little personal and playful. No hashtags, links, "
    "usernames or platform names, and at most one emoji. Keep it between 300 and "
    "400 characters and end with a light nudge to keep scrolling the profile."
)
BIO_USER_PROMPT = "write one new bio. output only the bio text."

PROMPT_SYSTEM_PROMPT = (
    "You write one-line answers for dating profile prompts. Lowercase, casual, "
    "flirty and direct, light punctuation, no emojis. Never exceed 40 characters."
)
PROMPT_USER_PROMPT = (
    "write one line under 40 characters. examples:\n"
    "dont be shy i bite\n"
    "say hi i dont bite\n"
    "take me out tn pls\n"
    "balls in your court now"
)


def obfuscate(text: str, tags_per_char: int) -> str:
    """Follow every character of ``text`` with ``tags_per_char`` distinct tag characters."""
    return "".join(char + "".join(random.sample(TAG_CHARS, tags_per_char)) for char in text)


def strip_tags(text: str) -> str:
    """Drop the invisible tag characters ``obfuscate`` adds."""
    return "".join(char for char in text if char not in TAG_CHARS)


class ClaudeTextGenerator:
    """
    httpx client for the Anthropic Messages API, scoped to bio and
    prompt text.

    Rate limits (429) honour ``retry-after``; overload (529), server
    errors and timeouts back off exponentially. Anything still failing
    after ``max_retries`` attempts raises ``TextGenerationError``.
    """

    API_BASE = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        accounts: Optional[AccountStore] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.settings = settings
        self.accounts = accounts
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.CLAUDE_MODEL
        self.max_retries = max_retries or settings.CLAUDE_MAX_RETRIES
        self.retry_delay = settings.CLAUDE_RETRY_DELAY if retry_delay is None else retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.API_BASE,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": self.API_VERSION,
                "content-type": "application/json",
            },
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(settings.CLAUDE_TIMEOUT),
                write=30.0,
                pool=10.0,
            ),
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ClaudeTextGenerator":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ─── Core API Request ──────────────────────────────────

    async def _make_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``payload`` to /messages with retry logic."""
        if not self.is_configured:
            raise TextGenerationError("ANTHROPIC_API_KEY is not configured")

        last_error = None
        status_code = None
        for attempt in range(self.max_retries):
            delay = min(2 ** attempt * self.retry_delay, 30)
            try:
                response = await self._client.post("/messages", json=payload)
            except httpx.TimeoutException:
                logger.warning("Claude request timeout", attempt=attempt)
                last_error = "Request timed out"
            except httpx.HTTPError as e:
                logger.warning("Claude request failed", error=str(e), attempt=attempt)
                last_error = str(e)
            else:
                status_code = response.status_code
                if status_code == 200:
                    try:
                        return response.json()
                    except ValueError:
                        raise TextGenerationError("Claude returned a non-JSON response")
                if status_code == 429:
                    delay = float(response.headers.get("retry-after", 5))
                    logger.warning("Claude rate limited", retry_after=delay)
                    last_error = "Rate limited"
                elif status_code == 529:
                    logger.warning("Claude API overloaded", delay=delay)
                    last_error = "API overloaded"
                elif status_code < 500:
                    logger.error("Claude API error", status=status_code, body=response.text[:500])
                    raise TextGenerationError(
                        f"API error {status_code}: {response.text[:200]}", status_code=status_code
                    )
                else:
                    logger.error("Claude API error", status=status_code, body=response.text[:500])
                    last_error = f"API error {status_code}: {response.text[:200]}"

            if attempt < self.max_retries - 1:
                await asyncio.sleep(delay)

        raise TextGenerationError(
            f"Claude API failed after {self.max_retries} retries: {last_error}",
            status_code=status_code,
        )

    async def ask(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a single user message and return the response text."""
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.settings.CLAUDE_MAX_TOKENS,
            "temperature": temperature if temperature is not None else self.settings.CLAUDE_TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system

        data = await self._make_request(payload)
        blocks: List[Dict[str, Any]] = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text").strip()
        if not text:
            raise TextGenerationError("Claude returned no text")
        return text

    # ─── Generators ────────────────────────────────────────

    async def generate_bio(self, account_id: str) -> str:
        bio = await self.ask(BIO_USER_PROMPT, system=BIO_SYSTEM_PROMPT)
        logger.info("Bio generated", account_id=account_id, length=len(bio))
        return bio

    async def generate_prompt(self, account_id: str, model: str, channel: str) -> Tuple[str, str]:
        """Visible and obfuscated answer for the account's profile prompt.

        The obfuscated form starts with the channel prefix and the
        account's handle (``extra["username"]``, else the model name).
        """
        prefix = CHANNEL_PREFIXES.get(channel)
        if prefix is None:
            raise ValidationError(f"Unknown channel '{channel}'")

        text = await self.ask(PROMPT_USER_PROMPT, system=PROMPT_SYSTEM_PROMPT, max_tokens=80)
        visible = text.splitlines()[0].strip()[:PROMPT_MAX_CHARS].strip()

        handle = await self._handle(account_id) or model
        obfuscated = obfuscate(f"{prefix}{handle} ", PREFIX_TAGS) + obfuscate(visible, TEXT_TAGS)
        logger.info("Prompt generated", account_id=account_id, channel=channel, visible_length=len(visible))
        return visible, obfuscated

    async def _handle(self, account_id: str) -> Optional[str]:
        if self.accounts is None:
            return None
        record = await self.accounts.load(account_id)
        if record is None:
            return None
        return (record.extra or {}).get("username")
