"""
Memory / retrieval collaborator (Supermemory-compatible document API).

- add_memory(): store one document with a stable, content-derived custom id so a
  retried write updates instead of duplicating.
- search_documents(): knowledge-base lookup used to ground reply suggestions.
  Documents that originate from calls themselves are filtered out.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Optional, Protocol

import httpx

from callassist.config import Settings
from callassist.errors import CollaboratorError

logger = logging.getLogger(__name__)

# Grounding context limits
MAX_DOCS = 4
MAX_CHUNKS_PER_DOC = 3
MAX_DOC_SUMMARY_CHARS = 700
MAX_CHUNK_CHARS = 700

_CALL_DOC_TYPES = {"call_utterance", "call_summary"}

MetadataValue = str | int | float | bool


class MemoryService(Protocol):
    async def add_memory(
        self,
        content: str,
        custom_id: str,
        metadata: dict[str, MetadataValue],
    ) -> dict[str, Any]:
        ...


def create_stable_custom_id(prefix: str, stable_input: str) -> str:
    """prefix + first 32 hex chars of sha256(input)."""
    digest = hashlib.sha256(stable_input.encode("utf-8")).hexdigest()[:32]
    return f"{prefix}_{digest}"


def sanitize_container_tag(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", (value or "").strip())[:100]


def _clamp(text: str, max_chars: int) -> str:
    text = text.strip()
    return text if len(text) <= max_chars else text[:max_chars] + "..."


def _is_call_document(doc: dict[str, Any]) -> bool:
    meta = doc.get("metadata") if isinstance(doc.get("metadata"), dict) else {}
    return meta.get("source") == "call" or meta.get("type") in _CALL_DOC_TYPES


def format_grounding_context(docs: list[dict[str, Any]]) -> str:
    """Render search results as a short excerpt block for the suggestion prompt."""
    blocks: list[str] = []
    for doc in [d for d in docs if isinstance(d, dict) and not _is_call_document(d)][:MAX_DOCS]:
        meta = doc.get("metadata") if isinstance(doc.get("metadata"), dict) else {}
        title = (doc.get("title") or meta.get("filename") or doc.get("documentId") or "Untitled")
        lines = [f"### {str(title).strip()}"]
        summary = doc.get("summary")
        if isinstance(summary, str) and summary.strip():
            lines.append(f"Summary: {_clamp(summary, MAX_DOC_SUMMARY_CHARS)}")
        chunks = doc.get("chunks") if isinstance(doc.get("chunks"), list) else []
        for chunk in chunks[:MAX_CHUNKS_PER_DOC]:
            content = chunk.get("content") if isinstance(chunk, dict) else None
            if isinstance(content, str) and content.strip():
                lines.append(f"- {_clamp(content, MAX_CHUNK_CHARS)}")
        blocks.append("\n".join(lines))
    if not blocks:
        return ""
    instruction = (
        "Use the knowledge base excerpts below when they help. If you used them, include a short "
        "Sources section listing the document titles you relied on. If no excerpt is relevant, do not force it."
    )
    return f"{instruction}\n\n" + "\n\n".join(blocks)


class SupermemoryService:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.supermemory.ai",
        container_tag: str = "callassist",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._base_url = base_url.rstrip("/")
        self._container_tag = sanitize_container_tag(container_tag)
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupermemoryService":
        return cls(
            api_key=settings.SUPERMEMORY_API_KEY,
            base_url=settings.SUPERMEMORY_BASE_URL,
            container_tag=settings.SUPERMEMORY_CONTAINER_TAG,
            timeout=settings.MEMORY_TIMEOUT_SEC,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise CollaboratorError("Supermemory API key not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    endpoint,
                    json=body,
                    headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Memory request {endpoint} failed: {e}") from e
        except ValueError as e:
            raise CollaboratorError(f"Memory request {endpoint} returned invalid JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    async def add_memory(
        self,
        content: str,
        custom_id: str,
        metadata: dict[str, MetadataValue],
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content, "metadata": metadata, "customId": custom_id}
        if self._container_tag:
            body["containerTag"] = self._container_tag
        data = await self._post("/v3/documents", body)
        logger.debug("Memory added: %s (%s)", data.get("id"), custom_id)
        return data

    async def search_documents(self, query: str, limit: int = MAX_DOCS) -> list[dict[str, Any]]:
        body: dict[str, Any] = {
            "q": query,
            "limit": limit,
            "includeSummary": True,
            "onlyMatchingChunks": True,
            "rerank": True,
        }
        if self._container_tag:
            body["containerTags"] = [self._container_tag]
        data = await self._post("/v3/search", body)
        results = data.get("results")
        return [r for r in results if isinstance(r, dict)] if isinstance(results, list) else []
