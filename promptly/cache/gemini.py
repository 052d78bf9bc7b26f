"""Gemini REST implementation of the chat provider."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from promptly import config
from promptly.cache.provider import ProviderError, ProviderSession
from promptly.models import CacheHandle

logger = logging.getLogger("promptly.cache")

CONTEXT_ACKNOWLEDGEMENT = (
    "I have received and processed the project context. I can now see all git-tracked files, "
    "the directory structure, and configuration files. I will use this information when "
    "analyzing and enhancing prompts. What prompt would you like me to help with?"
)


def _text_part(text: str) -> dict[str, Any]:
    return {"parts": [{"text": text}]}


def _error_message(response: httpx.Response) -> tuple[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        status = error.get("status") or ""
        message = error.get("message") or response.reason_phrase
        return f"{status} {message}".strip(), payload
    return response.text, payload


class GeminiProvider:
    """Context caches via ``cachedContents``; turns via ``generateContent``.

    The cache carries the project context and the default system instruction.
    A session whose instruction differs from the cached one (ask mode) gets
    that instruction as a leading exchange, since ``generateContent`` rejects
    a system instruction alongside cached content.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = config.GEMINI_MODEL,
        base_url: str = config.GEMINI_API_BASE,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self._api_key = api_key
        self._cache_instructions: dict[str, str] = {}
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, params={"key": self._api_key}, json=body)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            message, payload = _error_message(response)
            raise ProviderError(
                f"{response.status_code} {response.reason_phrase}: {message}",
                status_code=response.status_code,
                payload=payload,
            )
        return response.json()

    async def create_cache(
        self, system_instruction: str, context_document: str, ttl_seconds: int
    ) -> CacheHandle:
        body = {
            "model": f"models/{self.model}",
            "contents": [
                {"role": "user", **_text_part(f"Here is the project context for reference:\n\n{context_document}")},
                {"role": "model", **_text_part(CONTEXT_ACKNOWLEDGEMENT)},
            ],
            "systemInstruction": _text_part(system_instruction),
            "ttl": f"{int(ttl_seconds)}s",
        }
        payload = await self._post("/cachedContents", body)
        name = payload.get("name")
        if not name:
            raise ProviderError("Gemini cachedContents response did not include a name", payload=payload)
        self._cache_instructions[name] = system_instruction
        logger.info("Created cached content %s (expires %s)", name, payload.get("expireTime"))
        return CacheHandle(name=name, model=self.model, expireTime=payload.get("expireTime"))

    def start_session(self, handle: CacheHandle, system_instruction: str) -> ProviderSession:
        session = ProviderSession(handle=handle, system_instruction=system_instruction)
        if system_instruction and system_instruction != self._cache_instructions.get(handle.name):
            session.turns.extend(
                [
                    {"role": "user", **_text_part(f"For this conversation, follow these instructions:\n\n{system_instruction}")},
                    {"role": "model", **_text_part("Understood. I will follow these instructions.")},
                ]
            )
        return session

    async def send(self, session: ProviderSession, message: str) -> str:
        user_turn = {"role": "user", **_text_part(message)}
        body = {
            "cachedContent": session.handle.name,
            "contents": [*session.turns, user_turn],
        }
        payload = await self._post(f"/models/{session.handle.model or self.model}:generateContent", body)
        text = self._response_text(payload)
        session.turns.extend([user_turn, {"role": "model", **_text_part(text)}])
        return text

    async def delete_cache(self, handle: CacheHandle) -> None:
        self._cache_instructions.pop(handle.name, None)
        try:
            response = await self._client.delete(f"/{handle.name}", params={"key": self._api_key})
        except httpx.HTTPError as exc:
            logger.warning("Failed to delete cached content %s: %s", handle.name, exc)
            return
        if response.status_code >= 400 and response.status_code != 404:
            logger.warning("Failed to delete cached content %s: HTTP %s", handle.name, response.status_code)

    @staticmethod
    def _response_text(payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            feedback = payload.get("promptFeedback") or {}
            raise ProviderError(f"Gemini returned no candidates (blockReason={feedback.get('blockReason')})", payload=payload)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)
