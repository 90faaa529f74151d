"""
Chat-completions transport for the triage classifier.

`call_llm` returns the raw assistant text and raises LLMError for anything
that prevents getting it (missing key, HTTP failure, odd response shape).
`extract_json_object` is kept separate so the classifier decides what a
malformed answer means.
"""

import json
import logging
from typing import Any, Dict, List

import httpx

from .config import Config

logger = logging.getLogger(__name__)

_FENCE = "```"


class LLMError(Exception):
    """Raised when the model cannot be reached or returns something unusable."""


def _strip_code_fence(text: str) -> str:
    parts = text.split(_FENCE)
    if len(parts) < 3:
        return text
    inner = parts[1].lstrip()
    if inner.lower().startswith("json"):
        inner = inner[4:]
    return inner.strip()


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the JSON object embedded in a model answer.

    Handles bare JSON, ```json fenced blocks and prose around the object by
    slicing from the first '{' to the last '}'.
    """
    text = (text or "").strip()
    if not text:
        raise LLMError("Model returned an empty answer.")

    if _FENCE in text:
        text = _strip_code_fence(text)

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise LLMError("No JSON object found in model answer.")

    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise LLMError(f"Model answer is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise LLMError("Model answer JSON is not an object.")
    return parsed


def _message_content(data: Any) -> str:
    try:
        choices = data.get("choices")
        if not choices:
            raise LLMError("LLM response has no choices.")
        content = choices[0]["message"]["content"]
    except (AttributeError, KeyError, IndexError, TypeError) as e:
        logger.error("Unexpected LLM response shape: %s", e)
        raise LLMError("Unexpected structure in LLM response.") from e

    if not isinstance(content, str):
        raise LLMError(f"LLM content is {type(content).__name__}, expected str.")
    return content


def call_llm(
    config: Config,
    messages: List[Dict[str, str]],
    max_tokens: int = 800,
    temperature: float = 0.2,
    json_mode: bool = True,
) -> str:
    """
    Send `messages` to the configured chat-completions endpoint.

    Arguments:
        config: supplies openai_api_key, model_name, llm_base_url and
            llm_timeout_seconds.
        messages: [{'role': ..., 'content': ...}, ...]
        max_tokens: response token cap.
        temperature: sampling temperature.
        json_mode: request response_format=json_object.

    Returns:
        The first choice's message content.

    Raises:
        LLMError
    """
    if not config.openai_api_key:
        raise LLMError("OPENAI_API_KEY is not configured.")

    payload: Dict[str, Any] = {
        "model": config.model_name,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}

    logger.info("Calling LLM model=%s", config.model_name)
    try:
        with httpx.Client(timeout=config.llm_timeout_seconds) as client:
            resp = client.post(
                config.llm_base_url,
                headers={"Authorization": f"Bearer {config.openai_api_key}"},
                json=payload,
            )
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as e:
        logger.error("LLM request failed: %s", e)
        raise LLMError(f"HTTP error from LLM API: {e}") from e
    except json.JSONDecodeError as e:
        logger.error("LLM endpoint returned non-JSON body: %s", e)
        raise LLMError("Invalid JSON from LLM HTTP response.") from e

    content = _message_content(data)
    logger.debug("LLM raw content (first 500 chars): %s", content[:500])
    return content
