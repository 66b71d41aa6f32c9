"""
LLM Service — handles all text communication with the language-model backend.

Talks to any OpenAI-compatible chat-completions endpoint (Gemini's
compatibility endpoint by default). Supports:
  1. Plain generation, optionally with attachments and web search citations
  2. Structured generation parsed into a Pydantic model
  3. Streaming generation with an optional thinking budget

All tools that need a text model go through this service. Errors propagate
unchanged so each pipeline stage can apply its own recovery policy.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from consensus_engine.config import settings
from consensus_engine.models.schemas import FileAttachment, GroundingCitation

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class Completion:
    """Text plus any grounding citations returned by the backend."""
    text: str
    citations: List[GroundingCitation] = field(default_factory=list)


class LLMService:
    """
    Unified interface for text-model inference.

    Usage:
        service = LLMService()
        text = await service.generate("Summarise...", model="gemini-3-flash-preview")
        structured = await service.generate_structured("...", ResponseModel)
        async for fragment in service.stream("...", system_prompt="..."):
            ...
    """

    def __init__(self, client: Any = None):
        self._client = client

    async def _get_client(self):
        """Lazy-initialize the API client."""
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=settings.llm_api_key or "not-needed",
                base_url=settings.llm_base_url,
            )
        return self._client

    async def check_readiness(self) -> bool:
        """
        Lightweight probe that sends a tiny 1-token generate call.

        Returns True if the model responds, False on any error.
        """
        try:
            client = await self._get_client()
            response = await client.chat.completions.create(
                model=settings.fast_model_id,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
                temperature=0.0,
            )
            return bool(response.choices)
        except Exception as e:
            logger.debug(f"Readiness probe failed: {e}")
            return False

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 0,
        temperature: float = 0.7,
        attachments: Sequence[FileAttachment] = (),
        web_search: bool = False,
        thinking_budget: Optional[int] = None,
    ) -> Completion:
        """
        Generate text and collect any web citations the backend attaches.

        Args:
            prompt: The user prompt
            system_prompt: Optional system instruction
            model: Model id (defaults to the fast model)
            max_tokens: Max tokens to generate (0 = use default from config)
            temperature: Sampling temperature
            attachments: Files sent as content parts alongside the prompt
            web_search: Ask the backend to ground the answer with web search
            thinking_budget: Thinking token budget (None = backend default, 0 = off)
        """
        client = await self._get_client()
        kwargs: Dict[str, Any] = {
            "model": model or settings.fast_model_id,
            "messages": self._build_messages(prompt, system_prompt, attachments),
            "max_tokens": max_tokens or settings.llm_max_tokens,
            "temperature": temperature,
        }
        if web_search:
            kwargs["web_search_options"] = {}
        if thinking_budget is not None:
            kwargs["extra_body"] = self._thinking_config(thinking_budget)

        response = await client.chat.completions.create(**kwargs)
        message = response.choices[0].message
        return Completion(
            text=message.content or "",
            citations=self._extract_citations(message),
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 0,
        temperature: float = 0.7,
        thinking_budget: Optional[int] = None,
    ) -> str:
        """Generate text. Returns the response text ('' if the backend sent none)."""
        completion = await self.complete(
            prompt,
            system_prompt=system_prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            thinking_budget=thinking_budget,
        )
        return completion.text

    async def generate_structured(
        self,
        prompt: str,
        response_model: Type[T],
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 0,
        temperature: float = 0.2,
        thinking_budget: Optional[int] = None,
    ) -> T:
        """
        Generate a structured (Pydantic model) response.

        Appends JSON schema instructions to the prompt and parses the response.
        Includes truncated-JSON repair; does not retry, callers decide how to
        recover.

        Raises:
            ValueError: the response could not be parsed into response_model
        """
        schema = response_model.model_json_schema()
        structured_prompt = (
            f"{prompt}\n\n"
            f"Respond ONLY with valid JSON matching this schema:\n"
            f"```json\n{json.dumps(schema, indent=2)}\n```\n"
            f"Do not include any text outside the JSON."
        )

        raw = await self.generate(
            structured_prompt,
            system_prompt=system_prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            thinking_budget=thinking_budget,
        )
        json_str = self._extract_json(raw)

        last_error: Optional[Exception] = None
        # Try parsing as-is first, then try repairing truncated JSON
        for candidate in (json_str, self._repair_truncated_json(json_str)):
            if candidate is None:
                continue
            try:
                data = json.loads(candidate)
                return response_model.model_validate(data)
            except Exception as e:
                last_error = e

        raise ValueError(
            f"Backend returned invalid JSON for {response_model.__name__}: {last_error}. "
            f"Raw: {raw[:300]}"
        )

    async def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 0,
        thinking_budget: int = 0,
    ) -> AsyncIterator[str]:
        """
        Stream a response as text fragments, in the order the backend sends them.

        The thinking budget is forwarded through the compatibility layer's
        ``extra_body`` and ignored by backends that do not support it.
        """
        client = await self._get_client()
        kwargs: Dict[str, Any] = {
            "model": model or settings.pro_model_id,
            "messages": self._build_messages(prompt, system_prompt, ()),
            "max_tokens": max_tokens or settings.llm_max_tokens,
            "stream": True,
        }
        if thinking_budget:
            kwargs["extra_body"] = self._thinking_config(thinking_budget)

        response = await client.chat.completions.create(**kwargs)
        async for chunk in response:
            if not chunk.choices:
                continue
            text = chunk.choices[0].delta.content
            if text:
                yield text

    @staticmethod
    def _thinking_config(budget: int) -> Dict[str, Any]:
        # Gemini reads its thinking config from a nested extra_body
        return {"extra_body": {"google": {"thinking_config": {"thinking_budget": budget}}}}

    @staticmethod
    def _build_messages(
        prompt: str,
        system_prompt: Optional[str],
        attachments: Sequence[FileAttachment],
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        if not attachments:
            messages.append({"role": "user", "content": prompt})
            return messages

        parts: List[Dict[str, Any]] = []
        for f in attachments:
            data_uri = f"data:{f.mime_type};base64,{f.data}"
            if f.mime_type.startswith("image/"):
                parts.append({"type": "image_url", "image_url": {"url": data_uri}})
            else:
                parts.append({"type": "file", "file": {"filename": f.name, "file_data": data_uri}})
        parts.append({"type": "text", "text": prompt})
        messages.append({"role": "user", "content": parts})
        return messages

    @staticmethod
    def _extract_citations(message: Any) -> List[GroundingCitation]:
        """Collect url_citation annotations from a chat completion message."""
        citations: List[GroundingCitation] = []
        seen = set()
        for annotation in getattr(message, "annotations", None) or []:
            if getattr(annotation, "type", None) != "url_citation":
                continue
            cite = getattr(annotation, "url_citation", None)
            uri = getattr(cite, "url", None)
            if not uri or uri in seen:
                continue
            seen.add(uri)
            citations.append(GroundingCitation(title=getattr(cite, "title", "") or uri, uri=uri))
        return citations

    @staticmethod
    def _extract_json(text: str) -> str:
        """Extract JSON from a response that might include markdown code blocks."""
        if "```json" in text:
            start = text.index("```json") + 7
            end = text.find("```", start)
            if end == -1:
                # Unclosed code block: take everything after the opening tag
                return text[start:].strip()
            return text[start:end].strip()
        if "```" in text:
            start = text.index("```") + 3
            end = text.find("```", start)
            if end == -1:
                return text[start:].strip()
            return text[start:end].strip()
        for i, char in enumerate(text):
            if char in "{[":
                depth = 0
                for j in range(i, len(text)):
                    if text[j] in "{[":
                        depth += 1
                    elif text[j] in "}]":
                        depth -= 1
                    if depth == 0:
                        return text[i : j + 1]
        return text.strip()

    @staticmethod
    def _repair_truncated_json(text: str) -> Optional[str]:
        """
        Attempt to repair truncated JSON by closing unclosed strings,
        arrays, and objects. Returns None if the input is empty.
        """
        if not text or not text.strip():
            return None

        s = text.rstrip()
        stack: list[str] = []
        in_string = False
        i = 0
        while i < len(s):
            c = s[i]
            if c == "\\" and in_string:
                i += 2
                continue
            if c == '"':
                in_string = not in_string
            elif not in_string:
                if c in ("{", "["):
                    stack.append("}" if c == "{" else "]")
                elif c in ("}", "]") and stack:
                    stack.pop()
            i += 1

        if in_string:
            s += '"'
        s = s.rstrip()
        if s and s[-1] == ",":
            s = s[:-1]
        for closer in reversed(stack):
            s += closer
        return s
