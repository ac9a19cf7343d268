"""Tests for concord.models.groq module."""
import unittest
from unittest.mock import patch, MagicMock, AsyncMock

import httpx

from concord.models.groq import GroqClient, ChatResult


def _mock_http(mock_client_cls, response=None, side_effect=None):
    mock_client = MagicMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client_cls.return_value = mock_client
    return mock_client


def _response(status_code, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


class TestGroqClient(unittest.IsolatedAsyncioTestCase):
    async def test_no_api_key_returns_error(self):
        client = GroqClient(api_key="")
        result = await client.chat("sys", "hello", model="m")
        self.assertFalse(result.ok)
        self.assertIn("GROQ_API_KEY", result.error)
        self.assertFalse(result.rate_limited)

    def test_available_property(self):
        self.assertTrue(GroqClient(api_key="test-key").available)
        self.assertFalse(GroqClient(api_key="").available)

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_successful_chat_reports_headers(self, mock_client_cls):
        response = _response(
            200,
            payload={
                "choices": [{"message": {"content": '{"ok": true}'}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
            },
            headers={"X-RateLimit-Remaining-Tokens": "5800", "x-ratelimit-reset-tokens": "2s"},
        )
        mock_client = _mock_http(mock_client_cls, response)

        client = GroqClient(api_key="test-key")
        result = await client.chat("system", "user", model="llama-3.1-8b-instant")

        self.assertTrue(result.ok)
        self.assertEqual(result.text, '{"ok": true}')
        self.assertEqual(result.usage["total_tokens"], 16)
        self.assertEqual(result.headers["x-ratelimit-remaining-tokens"], "5800")
        body = mock_client.post.call_args.kwargs["json"]
        self.assertEqual(body["model"], "llama-3.1-8b-instant")
        self.assertEqual(body["response_format"], {"type": "json_object"})
        self.assertEqual(body["messages"][0], {"role": "system", "content": "system"})

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_plain_mode_omits_response_format(self, mock_client_cls):
        response = _response(200, payload={"choices": [{"message": {"content": "pong"}}]})
        mock_client = _mock_http(mock_client_cls, response)

        await GroqClient(api_key="k").chat("", "ping", model="m", json_mode=False)
        self.assertNotIn("response_format", mock_client.post.call_args.kwargs["json"])

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_rate_limit_is_classified(self, mock_client_cls):
        response = _response(
            429,
            payload={"error": {"message": "Rate limit reached on tokens per minute (TPM). Please try again in 5s.",
                               "code": "rate_limit_exceeded"}},
            headers={"retry-after": "5"},
        )
        _mock_http(mock_client_cls, response)

        result = await GroqClient(api_key="k").chat("s", "u", model="m")
        self.assertFalse(result.ok)
        self.assertTrue(result.rate_limited)
        self.assertFalse(result.malformed)
        self.assertIn("try again in 5s", result.error)
        self.assertEqual(result.headers["retry-after"], "5")

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_json_validation_failure_carries_generation(self, mock_client_cls):
        response = _response(
            400,
            payload={"error": {"message": "Failed to generate JSON", "code": "json_validate_failed",
                               "failed_generation": '{""message"": ""hi""}'}},
        )
        _mock_http(mock_client_cls, response)

        result = await GroqClient(api_key="k").chat("s", "u", model="m")
        self.assertTrue(result.malformed)
        self.assertFalse(result.rate_limited)
        self.assertEqual(result.failed_generation, '{""message"": ""hi""}')

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_http_error_without_json_body(self, mock_client_cls):
        _mock_http(mock_client_cls, _response(401, text="Unauthorized"))

        result = await GroqClient(api_key="bad").chat("s", "u", model="m")
        self.assertFalse(result.ok)
        self.assertIn("401", result.error)
        self.assertIn("Unauthorized", result.error)
        self.assertIsNone(result.error_code)

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_no_choices(self, mock_client_cls):
        _mock_http(mock_client_cls, _response(200, payload={"choices": []}))

        result = await GroqClient(api_key="k").chat("s", "u", model="m")
        self.assertFalse(result.ok)
        self.assertIn("No choices", result.error)

    @patch("concord.models.groq.httpx.AsyncClient")
    async def test_timeout(self, mock_client_cls):
        _mock_http(mock_client_cls, side_effect=httpx.ReadTimeout("slow"))

        result = await GroqClient(api_key="k", timeout=3).chat("s", "u", model="m")
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 0)
        self.assertIn("timeout", result.error)

    def test_from_config_reads_key_env(self):
        with patch.dict("os.environ", {"MY_KEY": "abc"}):
            client = GroqClient.from_config({"api_key_env": "MY_KEY", "base_url": "http://x/v1/"})
        self.assertEqual(client.api_key, "abc")
        self.assertEqual(client.base_url, "http://x/v1")

    def test_chat_result_defaults(self):
        result = ChatResult(text="x")
        self.assertTrue(result.ok)
        self.assertFalse(result.rate_limited)
        self.assertFalse(result.malformed)


if __name__ == "__main__":
    unittest.main()
