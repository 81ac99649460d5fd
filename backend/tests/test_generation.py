"""
Unit tests for the generation client, retry policy and prompts.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from comment_bot.core.errors import InfrastructureError
from comment_bot.generation.base import GenerationResult
from comment_bot.generation.http_client import HttpGenerationClient
from comment_bot.generation.prompts import (
    PERSONALITIES,
    build_generation_prompt,
    build_improvement_prompt,
    get_personality,
)
from comment_bot.generation.retry import generate_with_retry


@pytest.fixture
def mock_api(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport; returns the request log."""
    requests = []
    responses = {}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.get((request.method, request.url.path), httpx.Response(404))

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    return requests, responses


class TestExtractText:

    def test_choices_format(self):
        response = httpx.Response(200, json={
            "choices": [{"message": {"content": "1. Hi"}}],
            "chatId": "abc",
        })
        assert HttpGenerationClient._extract_text(response) == ("1. Hi", "abc")

    def test_json_string(self):
        response = httpx.Response(200, json="1. Plain")
        assert HttpGenerationClient._extract_text(response) == ("1. Plain", None)

    def test_plain_text(self):
        response = httpx.Response(200, text="not json at all")
        assert HttpGenerationClient._extract_text(response) == ("not json at all", None)

    def test_other_json(self):
        response = httpx.Response(200, json={"result": "x"})
        text, token = HttpGenerationClient._extract_text(response)
        assert json.loads(text) == {"result": "x"}
        assert token is None


class TestHttpGenerationClient:

    def test_headers(self):
        assert "Authorization" not in HttpGenerationClient("http://api")._get_headers()
        headers = HttpGenerationClient("http://api", api_key="k")._get_headers()
        assert headers["Authorization"] == "Bearer k"

    @pytest.mark.asyncio
    async def test_generate(self, mock_api):
        requests, responses = mock_api
        responses[("POST", "/api/chat")] = httpx.Response(200, json={
            "choices": [{"message": {"content": "1. A\n\n2. B"}}],
            "chatId": "upstream-1",
        })
        client = HttpGenerationClient("http://api.test/", timeout=5)

        result = await client.generate("prompt", "qwen-max-latest", session_token="7")
        assert result.text == "1. A\n\n2. B"
        assert result.session_token == "upstream-1"
        assert result.model == "qwen-max-latest"
        assert json.loads(requests[0].content) == {
            "message": "prompt", "model": "qwen-max-latest", "chatId": "7",
        }

    @pytest.mark.asyncio
    async def test_generate_keeps_session_token(self, mock_api):
        requests, responses = mock_api
        responses[("POST", "/api/chat")] = httpx.Response(200, text="1. Only")
        result = await HttpGenerationClient("http://api.test").generate("p", "m", session_token="9")
        assert result.session_token == "9"

    @pytest.mark.asyncio
    async def test_generate_without_session(self, mock_api):
        requests, responses = mock_api
        responses[("POST", "/api/chat")] = httpx.Response(200, text="x")
        await HttpGenerationClient("http://api.test").generate("p", "m")
        assert "chatId" not in json.loads(requests[0].content)

    @pytest.mark.asyncio
    async def test_generate_http_error_raises(self, mock_api):
        requests, responses = mock_api
        responses[("POST", "/api/chat")] = httpx.Response(502)
        with pytest.raises(httpx.HTTPStatusError):
            await HttpGenerationClient("http://api.test").generate("p", "m")

    @pytest.mark.asyncio
    async def test_status_models_and_clear(self, mock_api):
        requests, responses = mock_api
        responses[("GET", "/api/status")] = httpx.Response(200, json={"status": "ok"})
        responses[("GET", "/api/models")] = httpx.Response(200, json={
            "data": [{"id": "qwen-max-latest"}, {"id": "qwen-plus"}, {"name": "no-id"}],
        })
        responses[("DELETE", "/api/chats/5/messages")] = httpx.Response(200, json={})
        client = HttpGenerationClient("http://api.test")

        assert await client.check_status() == {"status": "ok"}
        assert await client.list_models() == ["qwen-max-latest", "qwen-plus"]
        assert await client.clear_history("5") is True


class TestRetry:

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        client = AsyncMock()
        client.generate.return_value = GenerationResult(text="ok", model="m")
        result = await generate_with_retry(client, "p", "m", max_retries=3, base_delay=2.0)
        assert result.success
        assert client.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_linear_backoff_then_success(self):
        client = AsyncMock()
        client.generate.side_effect = [
            httpx.ConnectError("down"),
            httpx.ReadTimeout("slow"),
            GenerationResult(text="ok", model="m"),
        ]
        with patch("comment_bot.generation.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await generate_with_retry(client, "p", "m", session_token="4", max_retries=3, base_delay=2.0)

        assert result.data.text == "ok"
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]
        client.generate.assert_awaited_with("p", "m", "4")

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        client = AsyncMock()
        client.generate.side_effect = httpx.ConnectError("down")
        with patch("comment_bot.generation.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await generate_with_retry(client, "p", "m", max_retries=3, base_delay=1.0)

        assert not result.success
        assert result.error_kind == InfrastructureError.kind
        assert result.error == InfrastructureError.GENERIC_MESSAGE
        assert client.generate.await_count == 3
        assert sleep.await_count == 2


class TestPrompts:

    def test_all_personalities_available(self):
        assert set(PERSONALITIES) == {"timur", "lyubov", "sofya", "galina", "pavel"}
        assert get_personality("galina").name == "Galina"
        assert get_personality(None) is None
        assert get_personality("unknown") is None

    def test_generation_prompt(self):
        plain = build_generation_prompt("  Market reopens  ")
        assert plain.endswith("Post:\n\"Market reopens\"")
        assert "Write 4 different comments" in plain

        voiced = build_generation_prompt("Market reopens", get_personality("pavel"))
        assert "\"Pavel\"" in voiced
        assert PERSONALITIES["pavel"].forbidden in voiced

    def test_improvement_prompt(self):
        prompt = build_improvement_prompt("Post", "1. Nice", "shorter", get_personality("sofya"))
        assert "ORIGINAL COMMENT:\n\"1. Nice\"" in prompt
        assert "USER FEEDBACK:\n\"shorter\"" in prompt
        assert "Keep the voice of \"Sofya\"" in prompt
