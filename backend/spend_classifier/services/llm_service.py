"""Local LLM classification using Ollama.

A local open-weight model (Mistral, Llama, etc.) served by Ollama picks a
category for a purchased item from the registry's allowed names. The model
answers in a small line-based format which is parsed and validated against
the allowed set; anything it invents is discarded.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import structlog

from spend_classifier.config import settings
from spend_classifier.core.exceptions import ServiceUnavailable, ValidationMiss
from spend_classifier.services.category_service import CategoryOption, CategorySnapshot

logger = structlog.get_logger()

MIN_CONFIDENCE = 50
MAX_CONFIDENCE = 95
DEFAULT_CONFIDENCE = 70

_CATEGORY_RE = re.compile(r"CATEGORY:\s*(.+)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"CONFIDENCE:\s*(\d+)", re.IGNORECASE)
_REASONING_RE = re.compile(r"REASONING:\s*(.+)", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


# ── LLM client ─────────────────────────────────────────


class LLMClient(ABC):
    """Text-generation backend."""

    @abstractmethod
    async def probe_availability(self) -> bool:
        """Check, with a short timeout, that the backend can serve requests."""

    @abstractmethod
    async def generate(self, prompt: str, model: str | None = None, options: dict | None = None) -> dict:
        """Return ``{"response": text}``. Raises ServiceUnavailable."""


class OllamaClient(LLMClient):
    """Ollama ``/api/tags`` probe and ``/api/generate`` completion."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.model = model or settings.llm_model
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def probe_availability(self) -> bool:
        """Check if Ollama is reachable and has the configured model."""
        try:
            async with self._client(settings.llm_probe_timeout) as client:
                resp = await client.get("/api/tags")
                if resp.status_code != 200:
                    return False
                data = resp.json()
        except httpx.HTTPError as e:
            logger.debug("ollama_probe_failed", url=self.base_url, error=str(e))
            return False
        except ValueError:
            return False

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            logger.debug("ollama_probe_bad_payload", url=self.base_url)
            return False
        model_names = [m.get("name") for m in models if isinstance(m, dict)]
        return any(isinstance(n, str) and (n == self.model or n.startswith(f"{self.model}:")) for n in model_names)

    async def generate(self, prompt: str, model: str | None = None, options: dict | None = None) -> dict:
        timeout = httpx.Timeout(connect=5.0, read=settings.llm_timeout, write=5.0, pool=5.0)
        try:
            async with self._client(timeout) as client:
                resp = await client.post(
                    "/api/generate",
                    json={
                        "model": model or self.model,
                        "prompt": prompt,
                        "stream": False,
                        "options": options or {},
                    },
                )
        except httpx.TimeoutException as e:
            logger.warning("ollama_timeout", model=model or self.model)
            raise ServiceUnavailable("Ollama request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("ollama_unreachable", url=self.base_url, error=str(e))
            raise ServiceUnavailable(f"Ollama unreachable: {e}") from e

        if resp.status_code != 200:
            logger.warning("ollama_error", status=resp.status_code, body=resp.text[:200])
            raise ServiceUnavailable(f"Ollama returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ServiceUnavailable("Ollama returned a non-JSON body") from e
        response = data.get("response", "") if isinstance(data, dict) else None
        if not isinstance(response, str):
            logger.warning("ollama_bad_payload", body=resp.text[:200])
            raise ServiceUnavailable("Ollama returned an unexpected payload")
        return {"response": response}


# ── Classifier ─────────────────────────────────────────


@dataclass
class AISuggestion:
    category_id: int
    category: str
    confidence: int
    reasoning: str


@dataclass
class ParsedResponse:
    category: str
    confidence: int
    reasoning: str


def build_prompt(title: str, categories: CategorySnapshot, foreign_category: str | None = None) -> str:
    """Prompt listing only the allowed categories."""
    details = []
    for option in categories.options:
        line = f"- {option.name}"
        if option.description:
            line += f" - {option.description}"
        if option.keywords:
            line += f" (Keywords: {option.keywords})"
        details.append(line)
    detail_block = "\n".join(details)
    names = ", ".join(categories.names)
    hint = f"\nSeller category: {foreign_category}" if foreign_category else ""

    return f"""Categorize this item: {title}{hint}

Available categories:
{detail_block}

CRITICAL RULES:

1. ONLY use the category names listed above. Never invent a category.
   If nothing fits well, pick the closest listed name with a low confidence.

2. IT IS BETTER TO USE LOW CONFIDENCE THAN TO BE WRONG
   - Use 30-50 when unsure.
   - Use 80-95 only when certain.
   - A wrong answer with high confidence is worse than a low-confidence one.

3. Classify items by what they ARE, not what they are used for.
   Wine glasses are kitchenware, not food. Cables are electronics.

4. Read the category descriptions. When a description names the item type,
   use that category with high confidence.

You must choose from these exact names: {names}

Respond ONLY in this format:
CATEGORY: [exact name from above list]
CONFIDENCE: [number 0-100]
REASONING: [what the item is and why it fits this category]"""


def parse_response(text: str) -> ParsedResponse | None:
    """Extract the first CATEGORY / CONFIDENCE / REASONING values."""
    if not isinstance(text, str):
        return None
    category_match = _CATEGORY_RE.search(text)
    if not category_match:
        return None
    confidence_match = _CONFIDENCE_RE.search(text)
    reasoning_match = _REASONING_RE.search(text)
    return ParsedResponse(
        category=category_match.group(1).strip(),
        confidence=int(confidence_match.group(1)) if confidence_match else DEFAULT_CONFIDENCE,
        reasoning=reasoning_match.group(1).strip() if reasoning_match else "AI-based categorization",
    )


def normalize_name(value: str) -> str:
    """Letters and digits only, with a trailing plural folded to singular."""
    value = _NON_ALNUM_RE.sub("", value.lower())
    if len(value) > 4 and value.endswith("ies"):
        return value[:-3] + "y"
    if len(value) > 3 and value.endswith("s") and not value.endswith("ss"):
        return value[:-1]
    return value


def validate_category(suggested: str, categories: CategorySnapshot) -> CategoryOption:
    """Map a suggested name onto the allowed set. Raises ValidationMiss.

    Exact case-insensitive match first, then containment between the
    normalized forms ("Health Care" -> "Healthcare", "Grocerys" -> "Groceries").
    """
    exact = categories.by_name(suggested)
    if exact:
        return exact

    normalized = normalize_name(suggested)
    if len(normalized) >= 3:
        for option in categories.options:
            actual = normalize_name(option.name)
            if actual and (normalized in actual or actual in normalized):
                logger.info("ai_category_recovered", suggested=suggested, category=option.name)
                return option
    raise ValidationMiss(suggested)


def clip_confidence(value: int) -> int:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


class AIClassifier:
    """Ask the LLM for a category among the allowed ones."""

    def __init__(self, client: LLMClient | None = None) -> None:
        self.client = client or OllamaClient()

    async def is_available(self) -> bool:
        if not settings.llm_enabled:
            return False
        return await self.client.probe_availability()

    async def classify(
        self, title: str, categories: CategorySnapshot, foreign_category: str | None = None
    ) -> AISuggestion | None:
        """Suggestion, or None when the model gave no usable answer.

        A backend that cannot answer also yields None.
        """
        if not title or not categories:
            return None
        if not await self.is_available():
            logger.info("llm_unavailable", model=getattr(self.client, "model", None))
            return None

        try:
            data = await self.client.generate(
                build_prompt(title, categories, foreign_category),
                options={"temperature": settings.llm_temperature, "num_predict": settings.llm_num_predict},
            )
        except ServiceUnavailable as e:
            logger.warning("llm_request_failed", error=str(e))
            return None
        parsed = parse_response(data.get("response", ""))
        if not parsed:
            logger.warning("llm_parse_failed", response=(data.get("response") or "")[:200])
            return None

        try:
            option = validate_category(parsed.category, categories)
        except ValidationMiss as e:
            logger.warning("llm_invalid_category", suggested=e.suggested, allowed=categories.names)
            return None

        return AISuggestion(
            category_id=option.id,
            category=option.name,
            confidence=clip_confidence(parsed.confidence),
            reasoning=parsed.reasoning,
        )
