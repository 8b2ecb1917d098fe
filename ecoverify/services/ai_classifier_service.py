"""
AI Classifier Service - Vision model check of the submitted photo

Supports:
- Google Gemini Vision (cloud)
- Ollama with a LLaVA model (local)
- Hugging Face Inference API (cloud)

Providers are tried in the order given by AI_PROVIDER_ORDER. Any provider
failure (timeout, auth, rate limit, malformed answer) falls through to the
next one; when all fail an ExternalServiceFailure is raised and the caller
treats the evidence as neutral.
"""
import base64
import json
import logging
import re
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ecoverify.config import settings
from ecoverify.db.models import MaterialType
from ecoverify.exceptions import ExternalServiceFailure

logger = logging.getLogger(__name__)

VALID_MATERIALS = [m.value for m in MaterialType]
VALID_QUALITIES = ("good", "fair", "poor")

# Pairs that earn partial credit when the model confuses them
NEAR_EQUIVALENT_MATERIALS = {
    frozenset({"paper", "cardboard"}),
}


class ProviderError(Exception):
    """A single provider could not produce a usable answer."""


@dataclass
class ClassificationResult:
    object_type: str
    confidence: float
    authentic: bool
    quality: str
    reasoning: str = ""
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_prompt(claimed_material: str) -> str:
    materials = ", ".join(VALID_MATERIALS)
    return f"""You are an expert recycling verification system. Analyze this image carefully.

Task:
1. Identify the object material. It must be one of: {materials}
2. Rate your confidence (0.0 to 1.0)
3. Determine if the image is authentic (not edited, not a screenshot, not AI-generated, not a stock photo)
4. Assess image quality (good/fair/poor)

The user claims this is: {claimed_material}

Respond ONLY with valid JSON in this exact format:
{{
  "object_type": "plastic",
  "confidence": 0.92,
  "authentic": true,
  "quality": "good",
  "reasoning": "short explanation"
}}

Be strict about authenticity - reject if the image looks fake, edited, or like a stock photo."""


def parse_response(raw: str) -> ClassificationResult:
    """Validate a provider's JSON answer. Raises ProviderError when unusable."""
    match = re.search(r"\{[\s\S]*\}", raw or "")
    if not match:
        raise ProviderError("No JSON found in AI response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Malformed JSON in AI response: {e}") from e

    object_type = str(parsed.get("object_type", "")).lower()
    confidence = parsed.get("confidence")
    authentic = parsed.get("authentic")
    quality = str(parsed.get("quality", "")).lower()

    if object_type not in VALID_MATERIALS:
        raise ProviderError(f"Invalid object type: {object_type!r}")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ProviderError(f"Invalid confidence: {confidence!r}")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ProviderError(f"Confidence out of range: {confidence}")
    if not isinstance(authentic, bool):
        raise ProviderError(f"Invalid authentic flag: {authentic!r}")
    if quality not in VALID_QUALITIES:
        raise ProviderError(f"Invalid quality: {quality!r}")

    return ClassificationResult(
        object_type=object_type,
        confidence=float(confidence),
        authentic=authentic,
        quality=quality,
        reasoning=str(parsed.get("reasoning", ""))
    )


class ClassifierProvider:
    """One vision backend. Subclasses return the raw model answer."""

    name = "base"

    def is_configured(self) -> bool:
        return True

    async def generate(
        self,
        client: httpx.AsyncClient,
        image_b64: str,
        claimed_material: str
    ) -> str:
        raise NotImplementedError

    async def health_check(self, client: httpx.AsyncClient) -> bool:
        return self.is_configured()


class GeminiProvider(ClassifierProvider):
    name = "gemini"

    def __init__(self, api_key: str, model: str, base_url: str):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, client, image_b64, claimed_material):
        if not self.api_key:
            raise ProviderError("Gemini API key not configured")

        payload = {
            "contents": [{
                "parts": [
                    {"text": build_prompt(claimed_material)},
                    {"inline_data": {"mime_type": "image/jpeg", "data": image_b64}}
                ]
            }],
            "generationConfig": {
                "temperature": 0.1,
                "topK": 1,
                "topP": 0.8,
                "maxOutputTokens": 500,
                "responseMimeType": "application/json"
            }
        }
        response = await client.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json=payload
        )
        if response.status_code == 429:
            raise ProviderError("Gemini rate limit exceeded")
        if response.status_code in (401, 403):
            raise ProviderError("Gemini API key rejected")
        response.raise_for_status()

        data = response.json()
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("No content in Gemini response") from e

    async def health_check(self, client):
        if not self.api_key:
            return False
        response = await client.get(
            f"{self.base_url}/models/{self.model}",
            params={"key": self.api_key}
        )
        return response.status_code == 200


class OllamaProvider(ClassifierProvider):
    name = "ollama"

    def __init__(self, base_url: str, model: str):
        self.base_url = base_url.rstrip("/")
        self.model = model

    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def generate(self, client, image_b64, claimed_material):
        response = await client.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": build_prompt(claimed_material),
                "images": [image_b64],
                "stream": False,
                "format": "json"
            }
        )
        response.raise_for_status()
        data = response.json()
        if isinstance(data, dict) and isinstance(data.get("response"), str):
            return data["response"]
        return json.dumps(data)

    async def health_check(self, client):
        response = await client.get(f"{self.base_url}/api/tags")
        return response.status_code == 200


class HuggingFaceProvider(ClassifierProvider):
    """Visual question answering model; free text is mapped onto our JSON shape."""

    name = "huggingface"

    def __init__(self, api_key: str, model: str, base_url: str):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, client, image_b64, claimed_material):
        if not self.api_key:
            raise ProviderError("Hugging Face API key not configured")

        question = (
            "What recycling material is in this image? "
            f"Options: {', '.join(VALID_MATERIALS)}. Is it authentic?"
        )
        response = await client.post(
            f"{self.base_url}/{self.model}",
            json={"inputs": {"image": f"data:image/jpeg;base64,{image_b64}", "question": question}},
            headers={"Authorization": f"Bearer {self.api_key}"}
        )
        if response.status_code == 429:
            raise ProviderError("Hugging Face rate limit exceeded")
        response.raise_for_status()

        data = response.json()
        if isinstance(data, list) and data:
            data = data[0]
        answer = data.get("answer") if isinstance(data, dict) else None
        return self._to_json(answer or json.dumps(data))

    @staticmethod
    def _to_json(answer: str) -> str:
        text = answer.lower()
        detected = next((material for material in VALID_MATERIALS if material in text), None)
        if detected is None:
            raise ProviderError("Hugging Face answer names no recycling material")

        return json.dumps({
            "object_type": detected,
            "confidence": 0.8,
            "authentic": "fake" not in text and "edited" not in text,
            "quality": "good" if "clear" in text else "fair",
            "reasoning": answer
        })


def build_providers(order: List[str]) -> List[ClassifierProvider]:
    """Instantiate providers from settings in the configured priority order"""
    factories = {
        "gemini": lambda: GeminiProvider(
            settings.GEMINI_API_KEY, settings.GEMINI_MODEL, settings.GEMINI_BASE_URL
        ),
        "ollama": lambda: OllamaProvider(settings.OLLAMA_BASE_URL, settings.OLLAMA_MODEL),
        "huggingface": lambda: HuggingFaceProvider(
            settings.HUGGINGFACE_API_KEY, settings.HUGGINGFACE_MODEL, settings.HUGGINGFACE_BASE_URL
        ),
    }
    providers = []
    for name in order:
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"Unknown AI provider in AI_PROVIDER_ORDER: {name}")
            continue
        providers.append(factory())
    return providers


class AIClassifierService:
    """
    Uniform classify() over an ordered list of providers.

    The image is downloaded once and handed to each provider as base64.
    """

    def __init__(
        self,
        providers: Optional[List[ClassifierProvider]] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.providers = providers if providers is not None else build_providers(
            settings.get_provider_order()
        )
        self.enabled = settings.AI_VERIFICATION_ENABLED if enabled is None else enabled
        self.timeout = timeout or settings.AI_VERIFICATION_TIMEOUT_SEC
        self._transport = transport

        logger.info(
            f"AI classifier initialized (enabled={self.enabled}, "
            f"providers={[p.name for p in self.providers]})"
        )

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    async def classify(self, image_url: str, claimed_material: str) -> ClassificationResult:
        """
        Classify the image at image_url against the claimed material.

        Raises ExternalServiceFailure when disabled or when no provider answers.
        """
        if not self.enabled:
            raise ExternalServiceFailure("AI verification disabled")
        if not self.providers:
            raise ExternalServiceFailure("No AI providers configured")

        try:
            image_bytes = await self._download_image(image_url)
        except httpx.HTTPError as e:
            logger.warning(f"Image download failed for AI verification: {e}")
            raise ExternalServiceFailure(f"Failed to download image: {e}") from e
        image_b64 = base64.b64encode(image_bytes).decode("ascii")

        errors: Dict[str, str] = {}
        async with self._client() as client:
            for provider in self.providers:
                try:
                    logger.debug(f"Trying AI provider: {provider.name}")
                    raw = await provider.generate(client, image_b64, claimed_material)
                    result = parse_response(raw)
                    result.provider = provider.name
                    logger.info(
                        f"AI verification by {provider.name}: {result.object_type} "
                        f"({result.confidence:.2f}, authentic={result.authentic})"
                    )
                    return result
                except (ProviderError, httpx.HTTPError, ValueError) as e:
                    errors[provider.name] = str(e) or e.__class__.__name__
                    logger.warning(f"Provider {provider.name} failed: {errors[provider.name]}, trying fallback...")

        logger.error("All AI providers failed")
        raise ExternalServiceFailure("All AI verification providers failed", errors)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        reraise=True
    )
    async def _download_image(self, image_url: str) -> bytes:
        async with self._client(settings.AI_IMAGE_DOWNLOAD_TIMEOUT_SEC) as client:
            response = await client.get(image_url)
            response.raise_for_status()
            return response.content

    @staticmethod
    def score_result(result: ClassificationResult, claimed_material: str) -> float:
        """Turn a provider answer into a 0-1 contribution for the verification score"""
        score = 0.0

        # 1. Material match (50%)
        if result.object_type == claimed_material:
            score += 0.5
        elif frozenset({result.object_type, claimed_material}) in NEAR_EQUIVALENT_MATERIALS:
            score += 0.25

        # 2. Model confidence (30%)
        score += result.confidence * 0.3

        # 3. Authenticity (20%)
        if result.authentic:
            score += 0.2

        if result.quality == "good":
            score = min(1.0, score + 0.1)
        elif result.quality == "poor":
            score = max(0.0, score - 0.2)

        return max(0.0, min(1.0, score))

    async def health_check(self) -> Dict[str, Any]:
        """Reachability of every configured provider"""
        checks = []
        if not self.enabled:
            return {"enabled": False, "healthy": True, "providers": checks}

        async with self._client(timeout=5.0) as client:
            for provider in self.providers:
                entry = {"provider": provider.name, "configured": provider.is_configured(), "healthy": False}
                try:
                    entry["healthy"] = await provider.health_check(client)
                except httpx.HTTPError as e:
                    entry["error"] = str(e)
                checks.append(entry)

        return {
            "enabled": True,
            "healthy": any(c["healthy"] for c in checks),
            "providers": checks
        }


# Singleton instance
ai_classifier_service = AIClassifierService()
