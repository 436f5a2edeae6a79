"""
LLM client for OpenAI-compatible chat completion endpoints.

Implements the GenerationBackend protocol: stream(request) yields StreamEvents
parsed from the server-sent event stream.
"""

import json
import logging
from typing import AsyncIterator, Optional

import aiohttp
from opentelemetry import trace

from chatloop.llm.chunk_reader import ChunkReader, LLMStreamError
from chatloop.models import GenerationRequest, TranscriptRole
from chatloop.streaming.events import StreamEvent
from chatloop.utils import mask_token
from chatloop.vars import (
    LLM_MODEL_NAME,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    LLM_TOKEN,
    LLM_URL,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

__all__ = ["LLMClient", "LLMStreamError"]


class LLMClient:
    """Client for communicating with the LLM API."""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.url = (url if url is not None else LLM_URL).rstrip("/")
        self.token = token if token is not None else LLM_TOKEN
        self.model_name = model_name if model_name is not None else LLM_MODEL_NAME
        self.temperature = temperature if temperature is not None else LLM_TEMPERATURE
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else LLM_TIMEOUT_SECONDS
        )

        logger.info(f"[LLMClient] Initialized with URL: {self.url}")
        if self.token:
            logger.info(
                mask_token(
                    f"[LLMClient] Using authentication token: {self.token[:10]}...",
                    self.token[:10],
                )
            )
        else:
            logger.info("[LLMClient] No authentication token configured")

    def _get_headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": "chatloop/1.0",
        }
        # the API always requires an auth header, so send a placeholder if unset
        headers["Authorization"] = f"Bearer {self.token or 'fake'}"
        return headers

    def _generate_llm_payload(self, request: GenerationRequest) -> dict:
        messages = []
        if request.system_preamble:
            messages.append({"role": "system", "content": request.system_preamble})
        for entry in request.transcript:
            role = "assistant" if entry.role == TranscriptRole.MODEL else "user"
            messages.append({"role": role, "content": entry.text})

        payload = {
            "messages": messages,
            "stream": True,
            "temperature": self.temperature,
        }
        if self.model_name:
            payload["model"] = self.model_name
        # tool_choice is only valid when tools are specified
        if request.tool_schemas:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": schema.name,
                        "description": schema.description,
                        "parameters": schema.parameters,
                    },
                }
                for schema in request.tool_schemas
            ]
            payload["tool_choice"] = "auto"
        return payload

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        payload = self._generate_llm_payload(request)
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        logger.debug(
            f"[LLMClient] Streaming request (messages={len(payload['messages'])}, tools={len(request.tool_schemas)})"
        )

        span = tracer.start_span("llm.stream")
        span.set_attribute("llm.url", self.url)
        span.set_attribute("llm.model", self.model_name or "")
        span.set_attribute("llm.messages", len(payload["messages"]))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.url}/chat/completions",
                    headers=self._get_headers(),
                    data=serialized,
                ) as response:
                    if not response.ok:
                        error_text = await response.text()
                        error_msg = f"LLM API error: {response.status} {error_text}"
                        logger.error(f"[LLMClient] {error_msg}")
                        raise LLMStreamError(error_msg)

                    async with ChunkReader(response.content) as reader:
                        async for event in reader.events():
                            yield event
            logger.debug("[LLMClient] Streaming completed")
        except LLMStreamError as exc:
            span.set_attribute("error", True)
            span.set_attribute("error.message", str(exc))
            raise
        except aiohttp.ClientError as exc:
            error_msg = f"Error streaming from LLM: {exc}"
            logger.error(f"[LLMClient] {error_msg}")
            span.set_attribute("error", True)
            span.set_attribute("error.message", error_msg)
            raise LLMStreamError(error_msg) from exc
        finally:
            span.end()
