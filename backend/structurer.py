"""
Delegated chunking for Folio.

Forwards text to an OpenAI chat model that segments (and, depending on the
requested intensity, rewrites) it into titled chunks.
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Optional

from chunker import ChunkingResult, TextChunk, clamp_intensity, effort_for_intensity
from errors import MalformedProviderResponse, ProviderUnavailable

CHUNKING_PROMPT = """You are an expert text organizer. Your task is to process unstructured text and organize it into a coherent book-like structure.

1. Analyze the entire text to understand its underlying themes and topics.
2. Suggest a concise, descriptive title for the entire document.
3. Divide the text into logical chunks. Each chunk should focus on a single, self-contained idea.
4. For each chunk, create a short, informative title.
5. Control the level of rewriting with the requested effort: {effort}. 'minimal' means literal chunking, 'high' allows significant rewriting to improve clarity.

Return a single JSON object:
{{"suggestedTitle": "Document Title", "chunks": [{{"title": "Section Title", "content": "..."}}]}}"""

REWRITE_PROMPT = """You are an expert text editor. Rewrite the given text at effort level '{effort}'.
- minimal: fix grammar and spelling only.
- low: improve clarity and flow slightly.
- medium: restructure sentences for better readability.
- high: paraphrase and simplify complex ideas significantly.
Return only the rewritten text in a JSON object: {{"content": "..."}}"""


def parse_chunking_payload(raw: Optional[str]) -> ChunkingResult:
    """Validate a provider reply and convert it into a ChunkingResult.

    Any schema violation raises MalformedProviderResponse; nothing partially
    parsed is ever returned.
    """
    try:
        payload = json.loads(raw or "")
    except (TypeError, ValueError) as exc:
        raise MalformedProviderResponse(f"Provider reply is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedProviderResponse("Provider reply must be a JSON object")

    raw_chunks = payload.get("chunks")
    if not isinstance(raw_chunks, list) or not raw_chunks:
        raise MalformedProviderResponse("Provider reply has no 'chunks' list")

    chunks: List[TextChunk] = []
    for position, item in enumerate(raw_chunks):
        if not isinstance(item, dict):
            raise MalformedProviderResponse(f"Chunk {position} is not an object")
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedProviderResponse(f"Chunk {position} has empty content")
        title = item.get("title")
        if title is not None and not isinstance(title, str):
            raise MalformedProviderResponse(f"Chunk {position} has a non-text title")
        chunks.append(TextChunk(content=content.strip(), title=title or f"Chunk {position + 1}"))

    suggested = payload.get("suggestedTitle")
    if not isinstance(suggested, str) or not suggested.strip():
        suggested = "Untitled Document"
    return ChunkingResult(chunks=chunks, suggested_title=suggested.strip())


class StructuringChunker:
    """Chunker backed by an OpenAI chat completion."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Any = None,
    ):
        self.model_name = model_name or os.environ.get("FOLIO_STRUCTURING_MODEL") or "gpt-4o"
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.client = client

    def _get_client(self):
        if self.client is not None:
            return self.client
        if not self.api_key or self.api_key == "default_key":
            raise ProviderUnavailable("OpenAI API key not properly configured")
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise ProviderUnavailable(f"openai is required for delegated chunking: {exc}") from exc
        self.client = OpenAI(api_key=self.api_key)
        return self.client

    def _complete(self, system_prompt: str, text: str) -> Optional[str]:
        import openai

        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as exc:
            raise ProviderUnavailable(f"Structuring provider call failed: {exc}") from exc

        try:
            return response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise MalformedProviderResponse(f"Provider reply has no message: {exc}") from exc

    def chunk(self, text: str, intensity: float = 0.5) -> ChunkingResult:
        """Segment text via the provider. Blank text yields no chunks."""
        if not text or not text.strip():
            return ChunkingResult()

        effort = effort_for_intensity(intensity)
        print(f"Delegating chunking to {self.model_name} (effort={effort})")
        raw = self._complete(CHUNKING_PROMPT.format(effort=effort), text)
        result = parse_chunking_payload(raw)
        print(f"✓ Provider returned {len(result.chunks)} chunks")
        return result

    def rewrite(self, content: str, intensity: float = 0.5) -> str:
        """Return a rewritten version of ``content``; nothing is persisted."""
        effort = effort_for_intensity(clamp_intensity(intensity))
        raw = self._complete(REWRITE_PROMPT.format(effort=effort), content)
        try:
            payload: Dict[str, Any] = json.loads(raw or "")
        except (TypeError, ValueError) as exc:
            raise MalformedProviderResponse(f"Provider reply is not valid JSON: {exc}") from exc

        rewritten = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(rewritten, str) or not rewritten.strip():
            raise MalformedProviderResponse("Provider reply has no rewritten content")
        return rewritten.strip()
