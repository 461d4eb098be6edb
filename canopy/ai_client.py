"""OpenAI Responses adapter: structured requests, text extraction, retries."""

import json
import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import openai
from openai import OpenAI
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from canopy.config import Settings

logger = logging.getLogger(__name__)

ERROR_SNIPPET_MAX = 400

T = TypeVar("T")


class AIError(Exception):
    """Base class for text-generation failures."""


class AIUnconfigured(AIError):
    """No API key is configured; the AI path is disabled."""


class AITransientFailure(AIError):
    """Transport or API error that may succeed on retry."""


class AIMalformedOutput(AIError):
    """The model answered, but not with the requested structure."""


class AIExhausted(AIError):
    """Every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempts: {last_error}")


RETRYABLE = (AITransientFailure, AIMalformedOutput)


def error_snippet(raw: object) -> str:
    """Short printable form of a raw response for error messages."""
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = json.dumps(raw, default=str)
        except (TypeError, ValueError):
            text = str(raw)
    if len(text) > ERROR_SNIPPET_MAX:
        return f"{text[:ERROR_SNIPPET_MAX]}..."
    return text


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _non_empty(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _match_text_value(part: Any) -> str | None:
    return _non_empty(_field(_field(part, "text"), "value"))


def _match_text_string(part: Any) -> str | None:
    return _non_empty(_field(part, "text"))


def _match_parsed(part: Any) -> str | None:
    parsed = _field(part, "parsed")
    if not parsed:
        return None
    if hasattr(parsed, "model_dump"):
        parsed = parsed.model_dump()
    return json.dumps(parsed)


def _match_nested(part: Any) -> str | None:
    nested = _field(part, "content")
    if isinstance(nested, list):
        return _text_from_parts(nested)
    return None


# Tried in order for each content part; first hit wins.
CONTENT_MATCHERS: tuple[Callable[[Any], str | None], ...] = (
    _match_text_value,
    _match_text_string,
    _match_parsed,
    _match_nested,
)


def _text_from_parts(parts: list[Any]) -> str | None:
    for part in parts:
        for matcher in CONTENT_MATCHERS:
            text = matcher(part)
            if text:
                return text
    return None


def extract_output_text(response: Any) -> str | None:
    """First non-empty text payload of a Responses API result.

    Accepts SDK objects or plain dicts, flat `output_text` or nested content.
    """
    flat = _non_empty(_field(response, "output_text"))
    if flat:
        return flat

    output = _field(response, "output")
    if not isinstance(output, list):
        return None
    for item in output:
        content = _field(item, "content")
        if isinstance(content, list):
            text = _text_from_parts(content)
            if text:
                return text
    return None


class AIClient:
    """Thin wrapper around `OpenAI.responses.create` for strict JSON output."""

    def __init__(self, client: Any, model: str) -> None:
        self._client = client
        self.model = model

    def request_json(
        self,
        *,
        instructions: str,
        input: str,
        schema_name: str,
        schema: dict[str, Any],
        max_output_tokens: int,
        reasoning_effort: str = "minimal",
        model: str | None = None,
    ) -> str:
        """Send one structured-output request and return the raw text.

        Raises AITransientFailure on SDK/HTTP errors and AIMalformedOutput when
        the response carries no text.
        """
        try:
            response = self._client.responses.create(
                model=model or self.model,
                instructions=instructions,
                input=input,
                text={
                    "format": {
                        "type": "json_schema",
                        "name": schema_name,
                        "strict": True,
                        "schema": schema,
                    }
                },
                reasoning={"effort": reasoning_effort},
                max_output_tokens=max_output_tokens,
            )
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            raise AITransientFailure(str(exc)) from exc

        text = extract_output_text(response)
        if not text:
            raise AIMalformedOutput(f"empty response from model. Raw: {error_snippet(_dump(response))}")
        return text


def _dump(response: Any) -> Any:
    if hasattr(response, "model_dump"):
        return response.model_dump()
    return response


def call_with_retry(fn: Callable[[], T], attempts: int = 3, delay: float = 0.3) -> T:
    """Run `fn`, retrying transient and malformed-output failures.

    Raises AIExhausted once `attempts` calls have failed.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, max=5),
        retry=retry_if_exception_type(RETRYABLE),
        reraise=True,
    )
    try:
        return retrying(fn)
    except RETRYABLE as exc:
        raise AIExhausted(attempts, exc) from exc


_client_lock = threading.Lock()
_client_instance: AIClient | None = None


def get_ai_client(settings: Settings) -> AIClient | None:
    """Process-wide client, or None when no API key is configured."""
    global _client_instance
    if not settings.ai_configured:
        return None
    with _client_lock:
        if _client_instance is None or _client_instance.model != settings.model:
            _client_instance = AIClient(OpenAI(api_key=settings.openai_api_key), settings.model)
        return _client_instance


def require_client(client: AIClient | None) -> AIClient:
    if client is None:
        raise AIUnconfigured("OPENAI_API_KEY is not set")
    return client
