from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from assistant.errors import UpstreamAIError
from assistant.services.llm.openai_provider import OpenAIProvider


@pytest.fixture
def http_client():
    client = MagicMock()
    client.post = AsyncMock()
    with patch("assistant.services.llm.openai_provider.httpx.AsyncClient") as client_class:
        client_class.return_value.__aenter__.return_value = client
        yield client


class TestPostJson:
    @pytest.mark.asyncio
    async def test_embedding_returns_vector(self, http_client):
        http_client.post.return_value = Mock(status_code=200, json=Mock(return_value={"data": [{"embedding": [0.1, 0.2]}]}))

        assert await OpenAIProvider("key").embed("olá") == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_non_json_body_is_upstream_error(self, http_client):
        http_client.post.return_value = Mock(
            status_code=200,
            text="<html>gateway</html>",
            json=Mock(side_effect=ValueError("Expecting value: line 1 column 1 (char 0)")),
        )

        with pytest.raises(UpstreamAIError):
            await OpenAIProvider("key").embed("olá")

    @pytest.mark.asyncio
    async def test_error_status_is_upstream_error(self, http_client):
        http_client.post.return_value = Mock(status_code=429, text="rate limited")

        with pytest.raises(UpstreamAIError):
            await OpenAIProvider("key").generate([{"role": "user", "content": "oi"}])
