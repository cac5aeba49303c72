"""Generation provider contract and its HTTP client."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from genjobs.config import PROVIDER_MAX_BACKOFF, settings
from genjobs.errors import (
    ProviderValidationError,
    StructuralProviderError,
    TransientProviderError,
)
from genjobs.schemas.providers import GenerateResult, ScoreResult

logger = logging.getLogger(__name__)

PRIMARY = "primary"
FALLBACK = "fallback"

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def parse_json_payload(text: str, provider: str = "") -> Dict[str, Any]:
    """Parse model text as JSON, tolerating markdown code fences around it."""
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ProviderValidationError(f"Unparseable JSON from provider: {e}", provider=provider)
    if not isinstance(value, dict):
        raise ProviderValidationError("Expected a JSON object from provider", provider=provider)
    return value


class GenerationProvider:
    """Abstract provider. Each method is one slow external call."""

    name = "provider"

    def generate(self, input_assets: Dict[str, str], params: Dict[str, Any]) -> GenerateResult:
        raise NotImplementedError

    def analyze(self, image_url: str, question: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def score(self, original_url: str, reference_url: str, candidates: List[str]) -> ScoreResult:
        raise NotImplementedError


class HttpGenerationProvider(GenerationProvider):
    """Provider reached over HTTP with bounded, classified retries."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        max_attempts: int = 3,
        backoff: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.transport = transport

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post_once(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, headers=self._build_headers(), json=payload)
        except httpx.TransportError as e:
            # Covers timeouts and connection failures
            raise TransientProviderError(f"{self.name} {path} transport error: {e}", provider=self.name)

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Retryable error {response.status_code} from provider {self.name}")
            raise TransientProviderError(
                f"{self.name} {path} returned {response.status_code}", provider=self.name
            )
        if response.status_code >= 400:
            raise StructuralProviderError(
                f"{self.name} {path} rejected request ({response.status_code}): {response.text[:200]}",
                provider=self.name,
            )

        try:
            body = response.json()
        except ValueError:
            raise ProviderValidationError(f"{self.name} {path} returned non-JSON body", provider=self.name)
        if not isinstance(body, dict):
            raise StructuralProviderError(f"{self.name} {path} returned {type(body).__name__}", provider=self.name)
        return body

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with transient failures retried up to ``max_attempts``."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=PROVIDER_MAX_BACKOFF),
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        )
        return retrying(self._post_once, path, payload)

    def generate(self, input_assets: Dict[str, str], params: Dict[str, Any]) -> GenerateResult:
        body = self._post("generate", {"input_assets": input_assets, "params": params})
        if "candidates" not in body:
            raise StructuralProviderError(f"{self.name} generate response has no candidates", provider=self.name)
        try:
            return GenerateResult.model_validate(body)
        except ValidationError as e:
            raise ProviderValidationError(f"{self.name} generate response invalid: {e}", provider=self.name)

    def analyze(self, image_url: str, question: Dict[str, Any]) -> Dict[str, Any]:
        body = self._post("analyze", {"image_url": image_url, "question": question})
        if "result" not in body:
            raise StructuralProviderError(f"{self.name} analyze response has no result", provider=self.name)
        result = body["result"]
        if isinstance(result, str):
            return parse_json_payload(result, provider=self.name)
        if not isinstance(result, dict):
            raise ProviderValidationError(f"{self.name} analyze result is not an object", provider=self.name)
        return result

    def score(self, original_url: str, reference_url: str, candidates: List[str]) -> ScoreResult:
        body = self._post(
            "score",
            {"original_url": original_url, "reference_url": reference_url, "candidates": candidates},
        )
        if "action" not in body:
            raise StructuralProviderError(f"{self.name} score response has no action", provider=self.name)
        try:
            result = ScoreResult.model_validate(body)
        except ValidationError as e:
            raise ProviderValidationError(f"{self.name} score response invalid: {e}", provider=self.name)
        if not 0 <= result.best_index < len(candidates):
            raise ProviderValidationError(
                f"{self.name} best_index {result.best_index} out of range for {len(candidates)} candidates",
                provider=self.name,
            )
        return result


class ProviderSet:
    """Named providers. Jobs pick one through ``metadata.provider``."""

    def __init__(self, providers: Dict[str, GenerationProvider]):
        self.providers = providers

    def get(self, name: str) -> GenerationProvider:
        if name not in self.providers:
            raise StructuralProviderError(f"Unknown provider: {name}", provider=name)
        return self.providers[name]

    def has(self, name: str) -> bool:
        return name in self.providers

    @classmethod
    def from_settings(cls) -> "ProviderSet":
        providers: Dict[str, GenerationProvider] = {
            PRIMARY: HttpGenerationProvider(
                PRIMARY,
                settings.PRIMARY_PROVIDER_URL,
                settings.PRIMARY_PROVIDER_API_KEY,
                timeout=settings.PROVIDER_TIMEOUT,
                max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            ),
        }
        if settings.FALLBACK_PROVIDER_URL:
            providers[FALLBACK] = HttpGenerationProvider(
                FALLBACK,
                settings.FALLBACK_PROVIDER_URL,
                settings.FALLBACK_PROVIDER_API_KEY,
                timeout=settings.PROVIDER_TIMEOUT,
                max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            )
        return cls(providers)
