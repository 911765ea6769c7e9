from __future__ import annotations

import asyncio
import concurrent.futures
import json
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import OpenAI

from convoflow.logging import get_logger

logger = get_logger(__name__)

_POSITIVE_WORDS = {"great", "thanks", "thank", "love", "awesome", "good", "perfect", "happy", "excellent"}
_NEGATIVE_WORDS = {"bad", "terrible", "angry", "hate", "awful", "broken", "worst", "upset", "refund"}
_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_PHONE_RE = re.compile(r"\+?[\d][\d\s\-()]{6,}\d")


class ModelBackend(Protocol):
    """Interface for chat-completion backends."""

    mode: str

    def generate(
        self,
        messages: List[dict],
        *,
        task: str = "chat",
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
    ) -> dict: ...


class OpenAIBackend:
    """OpenAI-compatible chat completions.

    Without an API key the backend answers deterministically from the prompt,
    which keeps TEST_MODE and local development free of network calls.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=base_url) if api_key else None
        self.mode = "openai" if self.client else "offline"

    def generate(
        self,
        messages: List[dict],
        *,
        task: str = "chat",
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
    ) -> dict:
        target_model = model or self.model
        if self.client:
            kwargs: Dict[str, Any] = {
                "model": target_model,
                "messages": messages,
                "temperature": temperature,
            }
            if max_tokens:
                kwargs["max_tokens"] = max_tokens
            completion = self.client.chat.completions.create(**kwargs)
            choices = getattr(completion, "choices", None) or []
            first_choice = next(iter(choices), None)
            if not first_choice:
                logger.warning("ai_completion_no_choices", model=target_model, task=task)
                content = ""
            else:
                content = first_choice.message.content or ""
            usage = getattr(completion, "usage", None)
            return {
                "content": content,
                "usage": {
                    "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                    "completion_tokens": getattr(usage, "completion_tokens", 0),
                    "total_tokens": getattr(usage, "total_tokens", 0),
                },
            }
        return {"content": _offline_content(task, messages), "usage": {}}


def _last_user_text(messages: Sequence[dict]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return str(msg.get("content") or "")
    return ""


def _offline_content(task: str, messages: Sequence[dict]) -> str:
    text = _last_user_text(messages)
    system = next((m.get("content", "") for m in messages if m.get("role") == "system"), "")
    lowered = text.lower()
    if task == "classify_intent":
        options = _options_from_system(system)
        for option in options:
            if option.lower() in lowered:
                return json.dumps({"intent": option, "confidence": 0.9})
        fallback = options[0] if options else "general"
        return json.dumps({"intent": fallback, "confidence": 0.1})
    if task == "sentiment":
        words = set(re.findall(r"[a-z']+", lowered))
        score = len(words & _POSITIVE_WORDS) - len(words & _NEGATIVE_WORDS)
        sentiment = "positive" if score > 0 else "negative" if score < 0 else "neutral"
        return json.dumps({"sentiment": sentiment, "score": float(max(-1, min(1, score)))})
    if task == "extract":
        fields = _options_from_system(system)
        extracted: Dict[str, Any] = {}
        for field_name in fields:
            key = field_name.lower()
            if "email" in key:
                match = _EMAIL_RE.search(text)
            elif "phone" in key:
                match = _PHONE_RE.search(text)
            else:
                match = None
            if match:
                extracted[field_name] = match.group(0).strip()
        return json.dumps(extracted)
    if task == "validate_format":
        return json.dumps({"valid": bool(text.strip()), "reason": "offline check"})
    if task == "summarize":
        return text[:280]
    return f"[offline model] {text}".strip()


def _options_from_system(system: str) -> List[str]:
    """Pull the bracketed option list out of a structured-task system prompt."""
    match = re.search(r"\[(.*?)\]", system or "")
    if not match:
        return []
    return [item.strip() for item in match.group(1).split(",") if item.strip()]


def _parse_json(content: str) -> Dict[str, Any]:
    cleaned = (content or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValueError(f"AI response was not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("AI response JSON was not an object")
    return parsed


class AIService:
    """Async AI capability on top of a blocking model backend.

    Backend calls run in a bounded thread pool so a slow completion never
    stalls the event loop; the orchestrator's per-node timeout still applies.
    """

    DEFAULT_WORKERS = 4

    def __init__(
        self,
        backend: ModelBackend,
        *,
        default_model: Optional[str] = None,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.backend = backend
        self.default_model = default_model
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    async def _generate(self, messages: List[dict], *, task: str, **options: Any) -> str:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            self._executor,
            lambda: self.backend.generate(messages, task=task, **options),
        )
        return str(result.get("content") or "")

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        context: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        messages: List[dict] = []
        system = system_prompt or "You are a helpful customer support assistant."
        if context:
            system = f"{system}\n\nUse this context when relevant:\n{context}"
        messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await self._generate(
            messages,
            task="chat",
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def classify_intent(self, text: str, intents: Sequence[str]) -> Dict[str, Any]:
        options = ", ".join(intents)
        messages = [
            {
                "role": "system",
                "content": (
                    f"Classify the user's intent. Options: [{options}]. "
                    'Respond with JSON only: {"intent": "<option>", "confidence": <0..1>}'
                ),
            },
            {"role": "user", "content": text},
        ]
        parsed = _parse_json(await self._generate(messages, task="classify_intent", temperature=0.0))
        intent = str(parsed.get("intent") or "").strip()
        return {"intent": intent, "confidence": float(parsed.get("confidence") or 0.0)}

    async def analyze_sentiment(self, text: str) -> Dict[str, Any]:
        messages = [
            {
                "role": "system",
                "content": (
                    "Analyze sentiment. Options: [positive, negative, neutral]. "
                    'Respond with JSON only: {"sentiment": "<option>", "score": <-1..1>}'
                ),
            },
            {"role": "user", "content": text},
        ]
        parsed = _parse_json(await self._generate(messages, task="sentiment", temperature=0.0))
        sentiment = str(parsed.get("sentiment") or "neutral").strip().lower()
        return {"sentiment": sentiment, "score": float(parsed.get("score") or 0.0)}

    async def extract_fields(self, text: str, fields: Sequence[str]) -> Dict[str, Any]:
        messages = [
            {
                "role": "system",
                "content": (
                    f"Extract these fields from the text: [{', '.join(fields)}]. "
                    "Respond with a JSON object only; omit fields that are not present."
                ),
            },
            {"role": "user", "content": text},
        ]
        return _parse_json(await self._generate(messages, task="extract", temperature=0.0))

    async def validate_format(self, text: str, expected_format: str) -> Dict[str, Any]:
        messages = [
            {
                "role": "system",
                "content": (
                    f"Validate whether the text matches the format: {expected_format}. "
                    'Respond with JSON only: {"valid": true|false, "reason": "..."}'
                ),
            },
            {"role": "user", "content": text},
        ]
        parsed = _parse_json(await self._generate(messages, task="validate_format", temperature=0.0))
        return {"valid": bool(parsed.get("valid")), "reason": parsed.get("reason")}

    async def summarize(self, text: str, *, max_length: Optional[int] = None) -> str:
        limit = f" in at most {max_length} characters" if max_length else ""
        messages = [
            {"role": "system", "content": f"Summarize the conversation{limit}."},
            {"role": "user", "content": text},
        ]
        summary = await self._generate(messages, task="summarize", temperature=0.2)
        if max_length and len(summary) > max_length:
            summary = summary[:max_length]
        return summary
