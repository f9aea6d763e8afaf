"""Tests for the OpenAI-backed analysis and prompt calls."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIError

import params_config
from vision_service import VisionService, VisionServiceError, build_vision_service


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_completion("  A confident person  "))
    return client


class TestDescribe:

    def test_sends_every_image(self, openai_client):
        service = VisionService(openai_client, "bfl-key")
        description = asyncio.run(service.describe(["https://a.test/1.jpg", "https://a.test/2.jpg"]))

        assert description == "A confident person"
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == params_config.VISION_MODEL
        user_content = kwargs["messages"][1]["content"]
        assert [part["image_url"]["url"] for part in user_content if part["type"] == "image_url"] == [
            "https://a.test/1.jpg", "https://a.test/2.jpg",
        ]

    def test_no_images(self, openai_client):
        service = VisionService(openai_client, "bfl-key")
        with pytest.raises(VisionServiceError):
            asyncio.run(service.describe([]))
        openai_client.chat.completions.create.assert_not_called()

    def test_empty_response(self, openai_client):
        openai_client.chat.completions.create.return_value = _completion("")
        service = VisionService(openai_client, "bfl-key")
        with pytest.raises(VisionServiceError):
            asyncio.run(service.describe(["https://a.test/1.jpg"]))

    def test_api_error_wrapped(self, openai_client):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        openai_client.chat.completions.create.side_effect = APIError("overloaded", request, body=None)
        service = VisionService(openai_client, "bfl-key")
        with pytest.raises(VisionServiceError, match="overloaded"):
            asyncio.run(service.describe(["https://a.test/1.jpg"]))


class TestComposePrompt:

    def test_includes_description_and_preferences(self, openai_client):
        service = VisionService(openai_client, "bfl-key")
        prompt = asyncio.run(service.compose_prompt("Short hair", {"background": "navy"}))

        assert prompt == "A confident person"
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == params_config.PROMPT_MODEL
        message = kwargs["messages"][1]["content"]
        assert "Short hair" in message
        assert '"background": "navy"' in message


def test_build_requires_both_keys():
    assert build_vision_service("", "bfl-key") is None
    assert build_vision_service("sk-test", "") is None
