"""
HTTP generation client for the FreeQwen-style comment API.

Endpoints:
    POST   /api/chat                      {message, model, chatId?}
    GET    /api/status
    GET    /api/models                    OpenAI-style {"data": [{"id": ...}]}
    DELETE /api/chats/{chatId}/messages
"""

import httpx
import json
import logging
import time
from typing import Any, Dict, List, Optional

from .base import GenerationClient, GenerationResult

logger = logging.getLogger(__name__)


class HttpGenerationClient(GenerationClient):
    """Generation API client over httpx; one AsyncClient per call."""

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _extract_text(response: httpx.Response) -> tuple:
        """
        Pull the generated text and session token out of a /api/chat response.

        Accepts the OpenAI choices format, a bare JSON string or plain text.
        """
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return response.text, None

        if isinstance(data, dict) and data.get("choices"):
            return data["choices"][0]["message"]["content"], data.get("chatId")
        if isinstance(data, str):
            return data, None
        return json.dumps(data, ensure_ascii=False), None

    async def generate(
        self,
        prompt: str,
        model: str,
        session_token: Optional[str] = None,
    ) -> GenerationResult:
        """Send a prompt to /api/chat."""
        start_time = time.time()
        payload: Dict[str, Any] = {"message": prompt, "model": model}
        if session_token:
            payload["chatId"] = session_token

        logger.debug(
            f"Generation call starting: model={model}, session={session_token or 'new'}, "
            f"prompt_length={len(prompt)}"
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/chat", json=payload, headers=self._get_headers()
                )
                resp.raise_for_status()

            text, returned_token = self._extract_text(resp)
            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Generation call completed",
                extra={"extra_fields": {
                    "model": model,
                    "response_length": len(text),
                    "duration_ms": round(duration_ms, 2),
                }}
            )
            return GenerationResult(
                text=text,
                model=model,
                session_token=returned_token or session_token,
                raw=resp.text,
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                f"Generation call failed: {str(e)}",
                extra={"extra_fields": {
                    "model": model,
                    "duration_ms": round(duration_ms, 2),
                    "error": str(e),
                }}
            )
            raise

    async def check_status(self) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(f"{self.base_url}/api/status", headers=self._get_headers())
            resp.raise_for_status()
            data = resp.json()
        logger.info("Generation API status received")
        return data if isinstance(data, dict) else {"status": data}

    async def list_models(self) -> List[str]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(f"{self.base_url}/api/models", headers=self._get_headers())
            resp.raise_for_status()
            data = resp.json()
        return [item["id"] for item in data.get("data", []) if "id" in item]

    async def clear_history(self, session_token: str) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.delete(
                f"{self.base_url}/api/chats/{session_token}/messages",
                headers=self._get_headers(),
            )
            resp.raise_for_status()
        logger.info("Upstream chat history cleared", extra={"extra_fields": {"session": session_token}})
        return True
