"""OpenRouter planner client with tool calling and retries."""

import hashlib
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from genjobs.config import settings
from genjobs.errors import ProviderValidationError, StructuralProviderError, TransientProviderError

logger = logging.getLogger(__name__)

PLANNER = "planner"


class ToolCall(BaseModel):
    """One function call chosen by the planner."""

    id: str
    name: str
    arguments: Dict[str, Any] = {}


class PlannerResponse(BaseModel):
    """What the planner decided this turn."""

    tool_calls: List[ToolCall] = []
    text: Optional[str] = None


def history_to_messages(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Convert stored history turns to OpenAI-style chat messages.

    Stored turns are ``{"role": "user", "content": ...}``,
    ``{"role": "model", "tool_call": {...}}`` and
    ``{"role": "function", "name": ..., "call_id": ..., "response": {...}}``.
    """
    answered = {turn.get("call_id") for turn in history if turn.get("role") == "function"}
    messages: List[Dict[str, Any]] = []
    for turn in history:
        role = turn.get("role")
        if role == "user":
            messages.append({"role": "user", "content": turn.get("content", "")})
        elif role == "model":
            call = turn["tool_call"]
            if call["id"] not in answered:
                # Calls that never got a result (finish_task) are replayed as plain text
                arguments = call.get("arguments", {})
                messages.append({"role": "assistant", "content": arguments.get("summary") or json.dumps(arguments)})
                continue
            messages.append({
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": call["id"],
                    "type": "function",
                    "function": {"name": call["name"], "arguments": json.dumps(call.get("arguments", {}))},
                }],
            })
        elif role == "function":
            messages.append({
                "role": "tool",
                "tool_call_id": turn.get("call_id", ""),
                "content": json.dumps(turn.get("response", {})),
            })
    return messages


class PlannerClient:
    """Client for the OpenRouter chat completions API in tool-calling mode."""

    def __init__(self, model: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        """Initialize the planner client."""
        self.api_key = settings.OPENROUTER_API_KEY
        self.base_url = settings.OPENROUTER_BASE_URL
        self.site_url = settings.SITE_URL
        self.site_name = settings.SITE_NAME
        self.model = model or settings.PLANNER_MODEL
        self.max_retries = settings.PLANNER_MAX_RETRIES
        self.retry_delay = settings.PLANNER_RETRY_DELAY
        self.timeout = settings.PLANNER_TIMEOUT
        self.transport = transport

    def _hash_text(self, text: str) -> str:
        """Hash text using SHA256."""
        return hashlib.sha256(text.encode()).hexdigest()

    def _build_headers(self) -> Dict[str, str]:
        """Build HTTP headers for OpenRouter."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_name:
            headers["X-Title"] = self.site_name
        return headers

    def plan(
        self,
        history: List[Dict[str, Any]],
        system_prompt: str,
        tools: List[Dict[str, Any]],
    ) -> PlannerResponse:
        """
        Ask the planner for its next tool call.

        Transient failures are retried ``PLANNER_MAX_RETRIES`` times with a
        fixed ``PLANNER_RETRY_DELAY`` between attempts.

        Args:
            history: Stored conversation turns
            system_prompt: System instructions
            tools: Function declarations offered this turn

        Returns:
            Parsed planner response

        Raises:
            TransientProviderError: When every attempt failed transiently
            StructuralProviderError: On a non-retryable HTTP error
            ProviderValidationError: On an unparseable response
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        )
        return retrying(self._plan_once, history, system_prompt, tools)

    def _plan_once(
        self,
        history: List[Dict[str, Any]],
        system_prompt: str,
        tools: List[Dict[str, Any]],
    ) -> PlannerResponse:
        messages = [{"role": "system", "content": system_prompt}] + history_to_messages(history)
        payload = {
            "model": self.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
        }
        request_hash = self._hash_text(json.dumps(payload, sort_keys=True))
        logger.info(f"Planner request to {self.model}, hash: {request_hash[:16]}")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._build_headers(),
                    json=payload,
                )
        except httpx.TransportError as e:
            raise TransientProviderError(f"Planner transport error: {e}", provider=PLANNER)

        # Handle errors
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Retryable error {response.status_code} from OpenRouter")
            raise TransientProviderError(f"Planner returned {response.status_code}", provider=PLANNER)
        if response.status_code >= 400:
            raise StructuralProviderError(
                f"Planner rejected request ({response.status_code}): {response.text[:200]}",
                provider=PLANNER,
            )

        try:
            message = response.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError) as e:
            raise ProviderValidationError(f"Unexpected planner response shape: {e}", provider=PLANNER)

        calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function", {})
            arguments = function.get("arguments") or "{}"
            try:
                parsed = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
            except json.JSONDecodeError as e:
                raise ProviderValidationError(f"Tool call arguments are not JSON: {e}", provider=PLANNER)
            calls.append(ToolCall(
                id=raw.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=function.get("name", ""),
                arguments=parsed,
            ))

        logger.info(f"Planner response: {[c.name for c in calls] or 'no tool call'}")
        return PlannerResponse(tool_calls=calls, text=message.get("content"))
