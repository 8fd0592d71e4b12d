"""Natural-language Q&A over the inventory through the Gemini text endpoint."""
import json
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from .config import CHAT_CONTEXT_LIMIT, GEMINI_API_BASE, GEMINI_MODEL
from .schema import FieldDefinition

GREETING = "LogisticsDroid Online. Connected to secure database grid."
NO_KEY_REPLY = "Error: No API Key found."
API_ERROR_REPLY = "API Error."
EMPTY_REPLY = "Error."


class CompletionError(Exception):
    """The completion endpoint could not produce a reply."""


def build_prompt(fields: Sequence[FieldDefinition], records: Iterable[Dict[str, Any]], query: str,
                 limit: int = CHAT_CONTEXT_LIMIT) -> str:
    labels = ", ".join(f.label for f in fields)
    sample = []
    for i, record in enumerate(records):
        if i >= limit:
            break
        sample.append({f.label: record.get(f.id) for f in fields})
    return (
        'You are "LogisticsDroid".\n'
        f"Data Schema Fields: {labels}.\n"
        f"Inventory Sample: {json.dumps(sample, ensure_ascii=False)}\n"
        f"User Query: {query}\n"
    )


class GeminiClient:
    """Thin wrapper over ``models/{model}:generateContent``."""

    def __init__(self, api_key: str, model: str = GEMINI_MODEL, base_url: str = GEMINI_API_BASE,
                 transport: Optional[httpx.BaseTransport] = None) -> None:
        self.api_key = api_key
        self.model = model
        self.client = httpx.Client(base_url=base_url, timeout=30.0, transport=transport)

    def generate(self, prompt: str) -> str:
        try:
            response = self.client.post(
                f"/v1beta/models/{self.model}:generateContent",
                headers={"x-goog-api-key": self.api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionError(str(e)) from e

        parts = []
        for candidate in body.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    parts.append(part["text"])
            if parts:
                break
        return "".join(parts)

    def close(self) -> None:
        self.client.close()


class Assistant:
    """Chat transcript plus the call that answers the latest question."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.transcript: List[Dict[str, str]] = [{"role": "model", "text": GREETING}]
        self.transport = transport

    def _reply(self, text: str) -> Dict[str, str]:
        entry = {"role": "model", "text": text}
        self.transcript.append(entry)
        return entry

    def ask(self, query: str, api_key: Optional[str], fields: Sequence[FieldDefinition],
            records: Iterable[Dict[str, Any]]) -> Optional[Dict[str, str]]:
        """Answer ``query``; returns the reply entry, or None for a blank query."""
        if not (query or "").strip():
            return None
        if not api_key:
            return self._reply(NO_KEY_REPLY)

        self.transcript.append({"role": "user", "text": query})
        prompt = build_prompt(fields, records, query)
        client = GeminiClient(api_key, transport=self.transport)
        try:
            text = client.generate(prompt)
        except CompletionError as e:
            print(f"❌ Completion failed: {e}")
            return self._reply(API_ERROR_REPLY)
        finally:
            client.close()
        return self._reply(text or EMPTY_REPLY)
