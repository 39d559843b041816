"""
Chat completion collaborator: reply suggestions during the call and a summary after it.

The orchestrator only depends on ChatService.complete(prompt, context, temperature).
CloudflareChatService runs it on Workers AI text generation over httpx.
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from callassist.config import Settings
from callassist.errors import CollaboratorError

logger = logging.getLogger(__name__)


class ChatService(Protocol):
    async def complete(
        self,
        prompt: str,
        context: Optional[str] = None,
        temperature: float = 0.5,
    ) -> str:
        ...


_SYSTEM_PROMPT = (
    "You are a discreet assistant helping the user during and after live calls. "
    "Be brief and concrete. Do not invent facts that are not in the transcript or the provided context."
)


def build_suggestion_prompt(utterance: str, transcript_tail: str) -> str:
    """Prompt asking for what the user could say next after the other party's turn."""
    parts = [
        "You are assisting the user during a live conversation.",
        f'Other speaker just finished saying:\n"{utterance.strip()}"',
    ]
    if transcript_tail.strip():
        parts.append(f"Recent transcript:\n{transcript_tail.strip()}")
    parts.append(
        "\n".join(
            [
                "Task:",
                "- Draft a reply the user can say next (brief, natural, confident).",
                "- If they asked a question, answer directly first, then add a crisp next step.",
                "- If there is missing context, ask exactly one clarifying question.",
                "- If a knowledge-base excerpt is relevant, use it and include a Sources section.",
            ]
        )
    )
    return "\n\n".join(parts)


def build_summary_prompt(transcript: str) -> str:
    return "\n".join(
        [
            "You are helping the user after a live conversation.",
            "Write a concise, high-signal summary based only on the transcript.",
            "",
            "Output format:",
            "- Summary (2-4 sentences)",
            "- Decisions (0-5 bullets)",
            "- Action Items (0-8 bullets, each with an owner if implied)",
            "- Open Questions (0-6 bullets)",
            "- Next Best Move (1-2 bullets)",
            "",
            "Transcript:",
            transcript.strip(),
        ]
    )


class CloudflareChatService:
    """Workers AI text generation (`/ai/run/{model}`), one request per completion."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        model: str = "@cf/meta/llama-3.1-8b-instruct",
        max_tokens: int = 1024,
        timeout: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_id = (account_id or "").strip()
        self._api_token = (api_token or "").strip()
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudflareChatService":
        return cls(
            account_id=settings.CLOUDFLARE_ACCOUNT_ID,
            api_token=settings.CLOUDFLARE_API_TOKEN,
            model=settings.CHAT_CF_MODEL,
            max_tokens=settings.CHAT_MAX_TOKENS,
            timeout=settings.CHAT_TIMEOUT_SEC,
        )

    @property
    def configured(self) -> bool:
        return bool(self._account_id and self._api_token)

    async def complete(
        self,
        prompt: str,
        context: Optional[str] = None,
        temperature: float = 0.5,
    ) -> str:
        """Return generated text. Raises CollaboratorError on auth/HTTP/payload failures."""
        if not self.configured:
            raise CollaboratorError("Cloudflare account id / API token not configured")

        system = _SYSTEM_PROMPT
        if (context or "").strip():
            system = f"{system}\n\nCONTEXT:\n{context.strip()}"
        url = f"https://api.cloudflare.com/client/v4/accounts/{self._account_id}/ai/run/{self._model}"
        payload = {
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self._max_tokens,
            "temperature": temperature,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Chat completion failed: {e}") from e
        except ValueError as e:
            raise CollaboratorError(f"Chat completion returned invalid JSON: {e}") from e

        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, dict):
            content = result.get("response", "")
        elif isinstance(result, str):
            content = result
        else:
            content = ""
        return (content or "").strip()
