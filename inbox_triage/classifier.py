"""
LLM-backed classifier producing a TriageResult per message.
"""

import logging

from pydantic import ValidationError

from .config import Config
from .llm_client import LLMError, call_llm, extract_json_object
from .models import InboundMessage, TriageResult
from .prompts import build_triage_messages

logger = logging.getLogger(__name__)


def parse_triage_content(content: str) -> TriageResult:
    """
    Turn raw model text into a TriageResult.

    Non-JSON or malformed answers yield the safe default: no response needed,
    normal priority, empty draft.
    """
    try:
        raw = extract_json_object(content)
        return TriageResult.model_validate(raw)
    except (LLMError, ValidationError) as e:
        snippet = content[:1000] if isinstance(content, str) else repr(content)
        logger.warning("Unusable triage JSON from model (%s); raw: %s", e, snippet)
        return TriageResult.safe_default()


class LLMClassifier:
    """
    Classifies messages through the configured chat-completions endpoint.

    Transport failures propagate as LLMError; the orchestrator records them
    as AI errors for that message.
    """

    def __init__(self, config: Config):
        self.config = config

    def classify(self, message: InboundMessage, to_address: str) -> TriageResult:
        messages = build_triage_messages(
            from_header=message.from_header,
            to_header=to_address,
            subject=message.subject,
            body=message.body_text,
        )
        content = call_llm(self.config, messages, max_tokens=800, temperature=0.2)
        return parse_triage_content(content)
