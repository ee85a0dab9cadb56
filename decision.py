"""Vision-model decision client: transcript building, model calls and reply parsing."""
from __future__ import annotations

import base64
import io
import json
import logging
import re
from typing import Any, Dict, List, Optional

from PIL import Image
from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from exceptions import ActionParseError, LLMConnectionError, LLMResponseError

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def encode_screenshot(data: bytes, max_width: Optional[int] = None) -> str:
    """Return the screenshot as base64 JPEG, downscaled to ``max_width`` if wider."""
    if max_width:
        image = Image.open(io.BytesIO(data))
        if image.width > max_width:
            height = max(1, round(image.height * max_width / image.width))
            image = image.convert("RGB").resize((max_width, height), Image.LANCZOS)
            buf = io.BytesIO()
            image.save(buf, format="JPEG", quality=80)
            data = buf.getvalue()
    return base64.b64encode(data).decode("ascii")


def parse_action_reply(text: str) -> Dict[str, Any]:
    """Extract one action object from a model reply.

    A fenced code block wins; otherwise the first well-formed ``{...}`` object in
    the text is used. The object must carry a ``type``.
    """
    if not text or not text.strip():
        raise ActionParseError("Empty model reply", text)

    candidates: List[str] = [m.group(1) for m in _FENCED_BLOCK.finditer(text)]
    candidates.append(text)

    decoder = json.JSONDecoder()
    for candidate in candidates:
        obj = _first_object(decoder, candidate)
        if obj is None:
            continue
        if not obj.get("type"):
            raise ActionParseError("Model action is missing 'type'", text)
        return obj

    raise ActionParseError("No JSON action found in model reply", text)


def _first_object(decoder: json.JSONDecoder, text: str) -> Optional[Dict[str, Any]]:
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except ValueError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


class Transcript:
    """Conversation resent in full on every decision.

    Messages are kept in OpenAI chat format: one system turn, then alternating
    user observations (screenshot + page text) and assistant replies.
    """

    def __init__(self, system_prompt: str, max_image_width: Optional[int] = None):
        self.max_image_width = max_image_width
        self.messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]

    def __len__(self) -> int:
        return len(self.messages)

    def add_observation(self, screenshot: bytes, text: str) -> None:
        image_b64 = encode_screenshot(screenshot, self.max_image_width)
        self.messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
                    {"type": "text", "text": text},
                ],
            }
        )

    def add_reply(self, text: str) -> None:
        self.messages.append({"role": "assistant", "content": text})

    def to_messages(self, max_images: Optional[int] = None) -> List[Dict[str, Any]]:
        """Messages to send; with ``max_images`` only the newest N observations keep their image."""
        if max_images is None:
            return list(self.messages)

        keep = max_images
        out: List[Dict[str, Any]] = []
        for msg in reversed(self.messages):
            content = msg.get("content")
            if msg["role"] == "user" and isinstance(content, list):
                if keep > 0:
                    keep -= 1
                else:
                    msg = {**msg, "content": [c for c in content if c.get("type") != "image_url"]}
            out.append(msg)
        out.reverse()
        return out


class DecisionClient:
    """Asks an OpenAI-compatible vision model for the next action."""

    def __init__(self, config: Any, client: Optional[AsyncOpenAI] = None, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("swarm.decision")
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2.0, min=2.0, max=10),
        reraise=True,
    )
    async def complete(self, messages: List[Dict[str, Any]]) -> str:
        """Call the model with retry logic and return the reply text."""
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except Exception as e:
            raise LLMConnectionError(f"Model call failed: {e}", self.config.base_url) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise LLMResponseError("Empty response from model")
        self.logger.debug("Model reply: %s", content[:500])
        return content

    async def close(self) -> None:
        await self.client.close()
