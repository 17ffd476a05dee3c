"""Phase and temperature classification using Claude Haiku.

The model only ever chooses among the workspace's own tag ids. Every reply
goes through a validated decode step; anything unusable, and any outage
after retries, drops to a keyword heuristic so a run never stalls on the
classification service.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence
from uuid import UUID

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from autophase.config import AnthropicSettings, ClassifierSettings, Settings
from autophase.engine.catalog import TagCatalog, TagDefinition, build_catalog
from autophase.engine.settings_store import clamp_int
from autophase.errors import ClassifierResponseError

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1.0"

EMPTY_TRANSCRIPT_REASON = "No transcript available."
DEFAULT_REASON = "Classified from latest conversation context."


# --- Retry policy ---

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff: waits backoff * attempt between tries."""

    max_attempts: int = 3
    backoff_seconds: float = 0.25
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    @classmethod
    def from_settings(cls, settings: ClassifierSettings) -> "RetryPolicy":
        return cls(max_attempts=max(1, settings.max_attempts), backoff_seconds=settings.backoff_seconds)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


# --- Results ---

@dataclass
class ModelReply:
    text: str
    model: str
    request_messages: list[dict]
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class ClassifierOutput:
    phase_tag_id: Optional[UUID]
    phase_confidence: int
    temperature_tag_id: Optional[UUID]
    temperature_confidence: int
    reason: str
    method: str = "model"  # model, fallback, empty
    reply: Optional[ModelReply] = field(default=None, repr=False)


@dataclass
class RetagChoice:
    tag_id: Optional[UUID]
    method: str = "model"  # model, fallback, default
    error: Optional[str] = None
    reply: Optional[ModelReply] = field(default=None, repr=False)


# --- Response decoding ---

def _lenient_tag_id(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    text = str(value).strip().lower()
    return text or None


def _lenient_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RawClassification(BaseModel):
    """Shape of the model's classification reply; unknown keys are ignored."""

    phase_tag_id: Optional[str] = None
    phase_confidence: Optional[float] = None
    temperature_tag_id: Optional[str] = None
    temperature_confidence: Optional[float] = None
    reason: Optional[str] = None

    @field_validator("phase_tag_id", "temperature_tag_id", mode="before")
    @classmethod
    def _tag_ids(cls, value):
        return _lenient_tag_id(value)

    @field_validator("phase_confidence", "temperature_confidence", mode="before")
    @classmethod
    def _confidences(cls, value):
        return _lenient_number(value)

    @field_validator("reason", mode="before")
    @classmethod
    def _reason(cls, value):
        return value.strip() if isinstance(value, str) and value.strip() else None


class RawTagChoice(BaseModel):
    tag_id: Optional[str] = None

    @field_validator("tag_id", mode="before")
    @classmethod
    def _tag_id(cls, value):
        return _lenient_tag_id(value)


_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json_object(raw_response: str) -> dict:
    """Pull the JSON object out of a model reply.

    Prefers a ```json fenced block, then the span from the first ``{`` to the
    last ``}``. Raises ClassifierResponseError if no object can be decoded.
    """
    text = (raw_response or "").strip()
    if not text:
        raise ClassifierResponseError("empty response")

    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        start = text.index("{")
        end = text.rindex("}") + 1
        parsed = json.loads(text[start:end])
    except ValueError as e:
        raise ClassifierResponseError(f"no JSON object in response: {raw_response[:200]!r}") from e

    if not isinstance(parsed, dict):
        raise ClassifierResponseError("response JSON is not an object")
    return parsed


def decode_classification(raw_response: str) -> RawClassification:
    try:
        return RawClassification.model_validate(extract_json_object(raw_response))
    except ValidationError as e:
        raise ClassifierResponseError(str(e)) from e


def decode_tag_choice(raw_response: str) -> RawTagChoice:
    try:
        return RawTagChoice.model_validate(extract_json_object(raw_response))
    except ValidationError as e:
        raise ClassifierResponseError(str(e)) from e


def resolve_classification(raw: RawClassification, catalog: TagCatalog) -> ClassifierOutput:
    """Validate ids against the catalog and fill confidence defaults.

    Ids that are not this workspace's phase or temperature tags are dropped.
    """
    phase_ids = {str(t.id): t.id for t in catalog.phase_tags}
    temperature_ids = {str(t.id): t.id for t in catalog.temperature_tags}

    phase_tag_id = phase_ids.get(raw.phase_tag_id) if raw.phase_tag_id else None
    temperature_tag_id = temperature_ids.get(raw.temperature_tag_id) if raw.temperature_tag_id else None

    return ClassifierOutput(
        phase_tag_id=phase_tag_id,
        phase_confidence=clamp_int(raw.phase_confidence, 0, 100, 62 if phase_tag_id else 45),
        temperature_tag_id=temperature_tag_id,
        temperature_confidence=clamp_int(raw.temperature_confidence, 0, 100, 58 if temperature_tag_id else 45),
        reason=raw.reason or DEFAULT_REASON,
    )


# --- Fallback heuristic ---

_BOOKING_RE = re.compile(r"\b(book|schedule|calendar|call tomorrow|call today|zoom|meet)\b", re.IGNORECASE)
_PURCHASE_RE = re.compile(r"\b(price|pricing|budget|ready|start|buy|payment|invoice|proposal)\b", re.IGNORECASE)
_HOT_RE = re.compile(r"\b(price|pricing|ready|start|book|call|buy|payment)\b", re.IGNORECASE)
_WARM_RE = re.compile(r"\b(interested|maybe|later|soon|curious)\b", re.IGNORECASE)
_COLD_RE = re.compile(r"\b(not now|busy|no thanks|stop|unsubscribe)\b", re.IGNORECASE)


def fallback_classify(transcript: str, catalog: TagCatalog) -> ClassifierOutput:
    """Keyword scorer used when the model is unavailable or unusable. Always answers."""
    text = transcript or ""

    if _BOOKING_RE.search(text):
        phase_tag_id, phase_confidence = catalog.tag_id_for_stage("call_booked"), 58
        phase_reason = "Detected call-booking language."
    elif _PURCHASE_RE.search(text):
        phase_tag_id, phase_confidence = catalog.tag_id_for_stage("qualified"), 57
        phase_reason = "Detected qualification/purchase intent language."
    else:
        phase_tag_id, phase_confidence = None, 42
        phase_reason = "Fallback classifier used."

    if _HOT_RE.search(text):
        temperature_tag_id, temperature_confidence = catalog.temperature_tag_id_containing("hot"), 56
    elif _WARM_RE.search(text):
        temperature_tag_id, temperature_confidence = catalog.temperature_tag_id_containing("warm"), 47
    elif _COLD_RE.search(text):
        temperature_tag_id, temperature_confidence = catalog.temperature_tag_id_containing("cold"), 55
    else:
        temperature_tag_id, temperature_confidence = None, 41

    return ClassifierOutput(
        phase_tag_id=phase_tag_id,
        phase_confidence=phase_confidence,
        temperature_tag_id=temperature_tag_id,
        temperature_confidence=temperature_confidence,
        reason=phase_reason,
        method="fallback",
    )


def fallback_retag_tag(transcript: str, tags: Sequence[TagDefinition]) -> Optional[UUID]:
    """Heuristic single-tag pick restricted to ``tags``."""
    return fallback_classify(transcript, build_catalog(tags)).phase_tag_id


# --- Prompts ---

CLASSIFY_SYSTEM_PROMPT = """You classify sales lead conversations for a setter team.
Return strict JSON only, no other text, with exactly these keys:
{"phase_tag_id": "<id or null>", "phase_confidence": 0-100, "temperature_tag_id": "<id or null>", "temperature_confidence": 0-100, "reason": "<one sentence>"}
Rules:
- Choose ids ONLY from the options provided. Use null when nothing fits.
- Be conservative: a low confidence is better than a wrong phase.
- The reason must mention the concrete cues from the conversation."""

CLASSIFY_USER_PROMPT = """Knowledge:
{knowledge}

Phase options:
{phase_options}

Temperature options:
{temperature_options}

Conversation transcript:
{transcript}"""

RETAG_SYSTEM_PROMPT = """You assign exactly one funnel phase to a sales lead conversation.
Return strict JSON only: {"tag_id": "<id or null>"}
Rules:
- Choose the id ONLY from the phase options provided; each phase lists its requirements.
- Pick a phase only when its requirements are clearly met. Be conservative.
- When nothing clearly fits, choose the New Lead phase if it is offered, otherwise null."""

RETAG_USER_PROMPT = """Knowledge:
{knowledge}

Phase options:
{phase_options}

Conversation transcript:
{transcript}"""


def build_classification_prompt(transcript: str, catalog: TagCatalog, knowledge: str = "") -> str:
    phase_options = [{"id": str(t.id), "name": t.name, "prompt": t.prompt or ""} for t in catalog.phase_tags]
    temperature_options = [{"id": str(t.id), "name": t.name} for t in catalog.temperature_tags]
    return CLASSIFY_USER_PROMPT.format(
        knowledge=knowledge or "(none)",
        phase_options=json.dumps(phase_options, indent=2),
        temperature_options=json.dumps(temperature_options, indent=2),
        transcript=transcript,
    )


def build_retag_prompt(transcript: str, tags: Sequence[TagDefinition], knowledge: str = "") -> str:
    phase_options = [{"id": str(t.id), "name": t.name, "requirements": t.prompt or ""} for t in tags]
    return RETAG_USER_PROMPT.format(
        knowledge=knowledge or "(none)",
        phase_options=json.dumps(phase_options, indent=2),
        transcript=transcript,
    )


# --- Client ---

class PhaseClassifier:
    """Calls the Anthropic Messages API and turns replies into tag choices."""

    def __init__(
        self,
        anthropic: AnthropicSettings,
        retry: Optional[RetryPolicy] = None,
        max_tokens: int = 750,
        retag_max_tokens: int = 450,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.anthropic = anthropic
        self.retry = retry or RetryPolicy()
        self.max_tokens = max_tokens
        self.retag_max_tokens = retag_max_tokens
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PhaseClassifier":
        return cls(
            anthropic=settings.anthropic,
            retry=RetryPolicy.from_settings(settings.classifier),
            max_tokens=settings.classifier.max_tokens,
            retag_max_tokens=settings.classifier.retag_max_tokens,
            **kwargs,
        )

    async def classify(self, transcript: str, catalog: TagCatalog, knowledge: str = "") -> ClassifierOutput:
        """Pick a phase and temperature for one conversation."""
        if not transcript.strip():
            return ClassifierOutput(
                phase_tag_id=None,
                phase_confidence=20,
                temperature_tag_id=None,
                temperature_confidence=20,
                reason=EMPTY_TRANSCRIPT_REASON,
                method="empty",
            )

        prompt = build_classification_prompt(transcript, catalog, knowledge)
        reply = await self._call_model(CLASSIFY_SYSTEM_PROMPT, prompt, self.max_tokens)
        if reply is None:
            logger.info("Classification service unavailable, using fallback heuristic")
            return fallback_classify(transcript, catalog)

        try:
            raw = decode_classification(reply.text)
        except ClassifierResponseError as e:
            logger.warning("Unusable classification response, using fallback heuristic: %s", e)
            output = fallback_classify(transcript, catalog)
        else:
            output = resolve_classification(raw, catalog)
        output.reply = reply
        return output

    async def pick_retag_tag(
        self,
        transcript: str,
        tags: Sequence[TagDefinition],
        knowledge: str = "",
        default_tag_id: Optional[UUID] = None,
    ) -> RetagChoice:
        """Choose one of ``tags`` for a conversation, or ``default_tag_id``."""
        if not tags or not transcript.strip():
            return RetagChoice(tag_id=default_tag_id, method="default")

        prompt = build_retag_prompt(transcript, tags, knowledge)
        reply = await self._call_model(RETAG_SYSTEM_PROMPT, prompt, self.retag_max_tokens)
        if reply is None:
            return RetagChoice(
                tag_id=fallback_retag_tag(transcript, tags) or default_tag_id,
                method="fallback",
                error="classification service unavailable",
            )

        try:
            choice = decode_tag_choice(reply.text)
        except ClassifierResponseError as e:
            logger.warning("Unusable retag response: %s", e)
            return RetagChoice(tag_id=default_tag_id, method="default", error=str(e), reply=reply)

        valid = {str(t.id): t.id for t in tags}
        tag_id = valid.get(choice.tag_id) if choice.tag_id else None
        if tag_id is None:
            return RetagChoice(tag_id=default_tag_id, method="default", reply=reply)
        return RetagChoice(tag_id=tag_id, method="model", reply=reply)

    async def _call_model(self, system: str, prompt: str, max_tokens: int) -> Optional[ModelReply]:
        """POST to the Messages API with retries. None means give up and fall back."""
        if not self.anthropic.api_key:
            logger.debug("No Anthropic API key configured, skipping model call")
            return None

        messages = [{"role": "user", "content": prompt}]
        request_payload = {
            "model": self.anthropic.model,
            "max_tokens": max_tokens,
            "temperature": 0,
            "system": system,
            "messages": messages,
        }
        url = self.anthropic.base_url.rstrip("/") + "/v1/messages"
        headers = {
            "x-api-key": self.anthropic.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        attempts = max(1, self.retry.max_attempts)

        async with httpx.AsyncClient(timeout=self.anthropic.timeout_seconds, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                start_time = time.time()
                try:
                    response = await client.post(url, headers=headers, json=request_payload)
                except httpx.TransportError as e:
                    logger.warning("Classifier request error (attempt %d/%d): %s", attempt, attempts, e)
                    if attempt < attempts:
                        await self.retry.sleep(self.retry.delay_for(attempt))
                        continue
                    return None

                if is_retryable_status(response.status_code):
                    logger.warning(
                        "Classifier returned HTTP %d (attempt %d/%d)", response.status_code, attempt, attempts
                    )
                    if attempt < attempts:
                        await self.retry.sleep(self.retry.delay_for(attempt))
                        continue
                    return None

                if response.status_code >= 400:
                    logger.error("Classifier request rejected: HTTP %d %s", response.status_code, response.text[:200])
                    return None

                try:
                    result = response.json()
                except ValueError:
                    logger.warning("Classifier returned non-JSON body")
                    return None
                if not isinstance(result, dict):
                    logger.warning("Classifier returned a non-object JSON body")
                    return None

                latency_ms = int((time.time() - start_time) * 1000)
                blocks = result.get("content")
                if not isinstance(blocks, list):
                    blocks = []
                text = "".join(
                    block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
                )
                usage = result.get("usage")
                if not isinstance(usage, dict):
                    usage = {}
                logger.debug(
                    "Classifier call: %dms, %s in / %s out tokens",
                    latency_ms,
                    usage.get("input_tokens", 0),
                    usage.get("output_tokens", 0),
                )
                return ModelReply(
                    text=text,
                    model=self.anthropic.model,
                    request_messages=[{"role": "system", "content": system}] + messages,
                    input_tokens=usage.get("input_tokens", 0),
                    output_tokens=usage.get("output_tokens", 0),
                    latency_ms=latency_ms,
                )
        return None
