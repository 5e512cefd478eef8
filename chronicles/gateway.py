"""Calls to the OpenAI-compatible LLM gateway used for narration, sheets and images."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from . import config

logger = logging.getLogger("uvicorn.error")


class GatewayError(Exception):
    status_code = 500
    message = "The AI service failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class RateLimited(GatewayError):
    status_code = 429
    message = "Too many requests, please try again later."


class QuotaExceeded(GatewayError):
    status_code = 402
    message = "Insufficient AI credits, please top up the workspace."


class UpstreamError(GatewayError):
    status_code = 500
    message = "The AI service failed."


class InvalidResponseFormat(GatewayError):
    status_code = 500
    message = "Invalid response format."


def get_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=config.LLM_GATEWAY_URL, timeout=config.LLM_TIMEOUT_SECONDS)


def build_headers() -> Dict[str, str]:
    if not config.LLM_API_KEY:
        logger.error("LLM_API_KEY is not configured")
        raise UpstreamError("The AI service is not configured.")
    return {
        "Authorization": f"Bearer {config.LLM_API_KEY}",
        "Content-Type": "application/json",
    }


def raise_for_gateway_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    if response.status_code == 429:
        raise RateLimited()
    if response.status_code == 402:
        raise QuotaExceeded()
    logger.warning("AI gateway error %s: %s", response.status_code, response.text[:500])
    raise UpstreamError()


async def chat_completion(
    messages: List[Dict[str, Any]],
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"model": model or config.NARRATOR_MODEL, "messages": messages}
    if temperature is not None:
        payload["temperature"] = temperature
    payload.update(extra)
    headers = build_headers()
    try:
        async with get_client() as client:
            response = await client.post("/chat/completions", json=payload, headers=headers)
            raise_for_gateway_status(response)
            return response.json()
    except httpx.HTTPError as exc:
        logger.warning("AI gateway request failed: %s", exc)
        raise UpstreamError() from exc
    except ValueError as exc:
        logger.warning("AI gateway returned a non-JSON body: %s", exc)
        raise UpstreamError() from exc


def first_message(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0].get("message") or {}


async def narrate(messages: List[Dict[str, str]], system_prompt: Optional[str]) -> str:
    model_messages = [
        {"role": "system", "content": system_prompt or config.DEFAULT_NARRATOR_PROMPT},
        *messages,
    ]
    data = await chat_completion(model_messages)
    content = (first_message(data).get("content") or "").strip()
    if not content:
        raise UpstreamError("The narrator did not answer.")
    return content


async def complete_json_text(system: str, prompt: str, temperature: float) -> str:
    data = await chat_completion(
        [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
        temperature=temperature,
    )
    content = first_message(data).get("content")
    if not content:
        raise UpstreamError("The AI returned no answer.")
    return content


async def generate_image(prompt: str) -> str:
    data = await chat_completion(
        [
            {
                "role": "user",
                "content": (
                    f"Generate a high-quality fantasy RPG scene illustration: {prompt}. "
                    "Ultra high resolution, detailed, atmospheric."
                ),
            }
        ],
        model=config.IMAGE_MODEL,
        modalities=["image", "text"],
    )
    images = first_message(data).get("images") or []
    try:
        image_url = images[0]["image_url"]["url"]
    except (IndexError, KeyError, TypeError):
        image_url = None
    if not image_url:
        raise UpstreamError("No image was generated.")
    return image_url
