"""
Vision analysis, prompt synthesis and image generation clients.

Analysis and prompt synthesis go through the OpenAI chat completions API.
Image generation submits a job to the BFL FLUX API and polls for the result
URL, using aiohttp for true async HTTP requests.
"""

import json
import asyncio
import logging
from typing import Sequence, Dict, Any, Optional

import aiohttp
from openai import AsyncOpenAI, APIError

import params_config

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert photographer and image analyst. Analyze the provided images "
    "of a person and write a detailed description of their facial features, hair style "
    "and overall appearance. The description will be used to generate a professional headshot."
)
ANALYSIS_USER_PROMPT = (
    "Analyze these images and provide a detailed description of the person "
    "for generating a professional headshot:"
)
PROMPT_SYSTEM_PROMPT = (
    "You are an expert at writing prompts for AI image generation. Combine a description "
    "of a person with their preferences for a headshot into one detailed prompt that "
    "results in a realistic, professional headshot. Reply with the prompt only."
)


class VisionServiceError(Exception):
    """An upstream vision, prompt or generation call failed."""


class VisionService:
    """Client for the three chained calls of the headshot pipeline."""

    def __init__(
        self,
        openai_client: AsyncOpenAI,
        bfl_api_key: str,
        bfl_api_url: str = params_config.BFL_API_URL,
    ):
        self.openai_client = openai_client
        self.bfl_api_key = bfl_api_key
        self.bfl_api_url = bfl_api_url

    async def _chat(self, model: str, messages: list) -> str:
        try:
            response = await self.openai_client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=params_config.MAX_COMPLETION_TOKENS,
            )
        except APIError as e:
            raise VisionServiceError(f"OpenAI API error: {e}") from e

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise VisionServiceError("OpenAI returned an empty response")
        return content

    async def describe(self, image_urls: Sequence[str]) -> str:
        """Summarize the visual identity of the person in the given photos."""
        if not image_urls:
            raise VisionServiceError("No images to analyze")

        logger.info(f"Analyzing {len(image_urls)} image(s) with {params_config.VISION_MODEL}")
        content: list = [{"type": "text", "text": ANALYSIS_USER_PROMPT}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
        description = await self._chat(params_config.VISION_MODEL, [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ])
        logger.info(f"Base description: {len(description)} chars")
        return description

    async def compose_prompt(self, description: str, preferences: Dict[str, Any]) -> str:
        """Merge the base description and the user's preferences into a generation prompt."""
        pref_string = json.dumps(preferences, sort_keys=True) if preferences else "none"
        prompt = await self._chat(params_config.PROMPT_MODEL, [
            {"role": "system", "content": PROMPT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Base description: {description}\n\n"
                    f"User preferences: {pref_string}\n\n"
                    "Create a detailed prompt to generate a professional headshot."
                ),
            },
        ])
        logger.info(f"Generation prompt: {len(prompt)} chars")
        return prompt

    async def generate_image(self, prompt: str) -> str:
        """
        Submit a text-to-image job to BFL and poll until it is ready.

        Returns:
            Signed URL of the generated image
        """
        headers = {
            "accept": "application/json",
            "Content-Type": "application/json",
            "x-key": self.bfl_api_key,
        }
        payload = {
            "prompt": f"{params_config.PROMPT_PREFIX}{prompt}",
            "width": params_config.WIDTH,
            "height": params_config.HEIGHT,
            "output_format": params_config.OUTPUT_FORMAT,
        }
        endpoint = f"{self.bfl_api_url}/{params_config.BFL_MODEL_ENDPOINT}"
        logger.info(f"Submitting job to BFL API: {endpoint}")

        async with aiohttp.ClientSession() as session:
            try:
                async with session.post(
                    endpoint,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=30)
                ) as response:
                    if response.status != 200:
                        text = await response.text()
                        logger.error(f"BFL API error: {response.status} - {text[:500]}")
                        raise VisionServiceError(f"BFL API error: {response.status} - {text[:200]}")
                    result = await response.json()
            except aiohttp.ClientError as e:
                raise VisionServiceError(f"BFL request failed: {e}") from e

            request_id = result.get("id")
            polling_url = result.get("polling_url")
            if not request_id or not polling_url:
                logger.error(f"Missing request_id or polling_url in response: {result}")
                raise VisionServiceError("No request ID or polling URL received from BFL API")
            logger.info(f"BFL request {request_id} submitted, polling...")

            for attempt in range(params_config.MAX_POLLING_ATTEMPTS):
                await asyncio.sleep(params_config.POLLING_INTERVAL)
                try:
                    async with session.get(
                        polling_url,
                        headers=headers,
                        timeout=aiohttp.ClientTimeout(total=10)
                    ) as poll_response:
                        if poll_response.status != 200:
                            logger.warning(f"Poll failed with status {poll_response.status}")
                            continue
                        poll_result = await poll_response.json()
                except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                    logger.warning(f"Poll attempt {attempt + 1} failed: {e}, retrying...")
                    continue

                status = poll_result.get("status")
                logger.debug(f"Poll status: {status}")

                if status == "Ready":
                    sample_url = (poll_result.get("result") or {}).get("sample")
                    if not sample_url:
                        raise VisionServiceError("No image URL in completed BFL result")
                    return sample_url
                if status in ("Failed", "Error", "Content Moderated", "Request Moderated"):
                    raise VisionServiceError(f"BFL job failed: {poll_result.get('error') or status}")

        raise VisionServiceError(
            f"BFL job timed out after {params_config.MAX_POLLING_ATTEMPTS * params_config.POLLING_INTERVAL} seconds"
        )

    async def download(self, url: str) -> bytes:
        """Fetch the bytes of a generated image."""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=30)) as response:
                    if response.status != 200:
                        raise VisionServiceError(f"Failed to fetch generated image: {response.status}")
                    data = await response.read()
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise VisionServiceError(f"Failed to fetch generated image: {e}") from e
        logger.info(f"Downloaded generated image: {len(data)} bytes")
        return data


def build_vision_service(openai_api_key: str, bfl_api_key: str) -> Optional[VisionService]:
    """Create the service if both providers are configured."""
    if not openai_api_key or not bfl_api_key:
        return None
    return VisionService(AsyncOpenAI(api_key=openai_api_key), bfl_api_key)
