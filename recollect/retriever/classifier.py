"""
Classification Adapter

Extracts intent + keywords with a single classification-service round trip.
The response is validated against a strict schema; any failure (no
credential, transport error, timeout, non-JSON body, missing keys, unknown
intent, wrongly-typed keyword lists) is converted into a fallback to the
regex extractor. Errors are never propagated to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..common.errors import ClassificationError
from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json
from ..common.schemas import ExtractedKeywords, Intent
from .fallback_extractor import Classification, FallbackExtractor

logger = logging.getLogger("recollect.retriever.classifier")


CLASSIFICATION_INSTRUCTIONS = """Analyze the user's message and extract BOTH the intent and search keywords in ONE response.
The keywords are used to search the user's personal memory (notes, past conversations, facts about people and pets).

Task 1 - Classify intent into ONE category:
- FACTUAL: Asking for specific facts (names, numbers, dates, "what is X", "who is Y")
- RELATIONAL: Asking about people or relationships ("my partner", "my cat", "uncle")
- NARRATIVE: Asking how/why something happened, wanting a story
- CONCEPTUAL: Asking about ideas, theories, or explanations
- EMOTIONAL: Expressing feelings, seeking emotional support
- TASK: Wanting help with something specific

Task 2 - Extract keywords in these categories:
- "entities": Proper nouns ONLY (names of people, places, brands). NO question words.
- "concepts": Important nouns and topics (profession, job, work, project, hobby)
- "temporal": Time references (dates, "recently", "yesterday")
- "relational": Relationship words (partner, uncle, friend, cat, family)
- "emotional": Emotional states (struggling, happy, worried)

Return ONLY valid JSON with this EXACT structure:
{"intent": "FACTUAL", "keywords": {"entities": [], "concepts": [], "temporal": [], "relational": [], "emotional": []}}

Examples:
"What's my uncle's profession?" -> {"intent": "FACTUAL", "keywords": {"entities": [], "concepts": ["profession"], "temporal": [], "relational": ["uncle"], "emotional": []}}
"Tell me about Lilou" -> {"intent": "RELATIONAL", "keywords": {"entities": ["Lilou"], "concepts": [], "temporal": [], "relational": ["cat"], "emotional": []}}"""


# ============================================================================
# Response schema
# ============================================================================

class KeywordsPayload(BaseModel):
    """Keyword lists as returned by the service. Absent or null -> []."""
    model_config = ConfigDict(extra="ignore", strict=True)

    entities: Optional[List[str]] = None
    concepts: Optional[List[str]] = None
    temporal: Optional[List[str]] = None
    relational: Optional[List[str]] = None
    emotional: Optional[List[str]] = None

    def to_keywords(self) -> ExtractedKeywords:
        return ExtractedKeywords(
            entities=self.entities or [],
            concepts=self.concepts or [],
            temporal=self.temporal or [],
            relational=self.relational or [],
            emotional=self.emotional or [],
        )


class ClassificationPayload(BaseModel):
    """Top-level response object: both keys are required."""
    model_config = ConfigDict(extra="ignore")

    intent: Intent
    keywords: KeywordsPayload = Field(...)

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value):
        intent = Intent.parse(value)
        if intent is None:
            raise ValueError(f"unknown intent {value!r}")
        return intent


@dataclass
class ClassificationOutcome:
    """Result of one service call: either a classification or an error."""
    value: Optional[Classification] = None
    error: Optional[ClassificationError] = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def success(cls, value: Classification) -> "ClassificationOutcome":
        return cls(value=value)

    @classmethod
    def failure(cls, reason: str, detail: str = "") -> "ClassificationOutcome":
        return cls(error=ClassificationError(reason, detail))


def parse_classification(raw: str) -> ClassificationOutcome:
    """
    Validate a raw service response.

    Pure: no I/O, so every malformed-response case is testable without
    network mocking.
    """
    if not raw or not raw.strip():
        return ClassificationOutcome.failure("empty_response")

    body = parse_llm_json(raw)
    try:
        payload = ClassificationPayload.model_validate_json(body)
    except ValidationError as e:
        errors = e.errors()
        if any(err.get("type") == "json_invalid" for err in errors):
            return ClassificationOutcome.failure("invalid_json", body[:200])
        return ClassificationOutcome.failure("schema_mismatch", str(errors[:3]))

    return ClassificationOutcome.success(
        Classification(intent=payload.intent, keywords=payload.keywords.to_keywords())
    )


class ClassificationAdapter:
    """
    Intent + keyword classification over an LLM completion endpoint.

    The fallback decision is made in exactly one place, ``classify()``.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        fallback: Optional[FallbackExtractor] = None,
        timeout: float = 8.0,
        max_tokens: int = 250,
    ):
        """
        Initialize classification adapter.

        Args:
            llm_client: Client for the classification service (None disables it)
            fallback: Regex extractor used on any failure
            timeout: Upper bound for the service call, in seconds
            max_tokens: Response token limit
        """
        self._llm = llm_client
        self._fallback = fallback or FallbackExtractor()
        self._timeout = timeout
        self._max_tokens = max_tokens

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def classify(self, message: str) -> Classification:
        """
        Classify a message. Never raises for service or response problems.

        Returns:
            Classification from the service, or from the fallback extractor
            with used_fallback=True and fallback_reason set
        """
        outcome = await self._request_classification(message)
        if outcome.ok:
            result = outcome.value
            logger.info(
                "Classified intent=%s keywords=%d",
                result.intent.value,
                len(result.keywords.all_terms()),
            )
            return result

        reason = outcome.error.reason
        if reason == "unavailable":
            logger.info("Classification service unavailable, using fallback extraction")
        else:
            logger.warning("Classification failed (%s), using fallback extraction", outcome.error)

        result = self._fallback.extract(message)
        result.fallback_reason = reason
        return result

    async def _request_classification(self, message: str) -> ClassificationOutcome:
        """Issue one request and validate the response."""
        if not self.is_available:
            return ClassificationOutcome.failure("unavailable")
        if not message or not message.strip():
            return ClassificationOutcome.failure("empty_message")

        try:
            raw = await asyncio.wait_for(
                self._llm.generate(
                    f'Message: "{message}"',
                    system=CLASSIFICATION_INSTRUCTIONS,
                    max_tokens=self._max_tokens,
                    timeout=self._timeout,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return ClassificationOutcome.failure("timeout", f"no response after {self._timeout}s")
        except Exception as e:
            return ClassificationOutcome.failure("transport_error", str(e))

        return parse_classification(raw)
