from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Protocol, Sequence, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from .config import AppConfig, ReasoningMarker
from .errors import GenerationError
from .index import SearchResult

logger = logging.getLogger(__name__)

NO_CONTEXT_PLACEHOLDER = "(no relevant notes were found)"

_ANSWER_RE = re.compile(r"(?:Answer|Result|Output):\s*(.*)", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[ \t]*[-*][ \t]*", re.MULTILINE)


@dataclass
class CompletionRequest:
    system_prompt: str
    context_block: str
    user_query: str
    history: List[Tuple[str, str]] = field(default_factory=list)


class TextGenerator(Protocol):
    async def complete(self, request: CompletionRequest) -> str: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[str]: ...


class CancellationFlag:
    """Raised by a consumer to stop a streamed answer between fragments."""

    def __init__(self) -> None:
        self._raised = False

    @property
    def is_raised(self) -> bool:
        return self._raised

    def raise_(self) -> None:
        self._raised = True

    def reset(self) -> None:
        self._raised = False


def build_context_block(
    results: Sequence[SearchResult],
    max_chars: int,
) -> Tuple[str, List[SearchResult]]:
    """Number the excerpts with their source, staying within a character budget."""
    parts: List[str] = []
    used: List[SearchResult] = []
    total_chars = 0
    for result in results:
        snippet = result.text.strip()
        if not snippet:
            continue
        entry = f"[{len(used) + 1}] Source: {result.source_path}\n{snippet}"
        if used and total_chars + len(entry) > max_chars:
            break
        parts.append(entry)
        used.append(result)
        total_chars += len(entry)
    return "\n\n---\n\n".join(parts), used


def build_user_prompt(request: CompletionRequest) -> str:
    header = (
        "Answer the question using only the context excerpts from my notes below.\n"
        "If the answer is not clearly present in the context, say you are not sure rather than guessing.\n"
        "Cite the sources you used by their path.\n\n"
    )
    context = request.context_block or NO_CONTEXT_PLACEHOLDER
    return f"{header}Context:\n{context}\n\nUser question: {request.user_query}\nAnswer:"


def build_messages(request: CompletionRequest) -> List[dict]:
    messages = [{"role": "system", "content": request.system_prompt}]
    for prompt, response in request.history:
        messages.append({"role": "user", "content": prompt})
        messages.append({"role": "assistant", "content": response})
    messages.append({"role": "user", "content": build_user_prompt(request)})
    return messages


def extract_actual_response(response: str, markers: Sequence[ReasoningMarker]) -> str:
    """
    Best-effort removal of "thinking" sections emitted by reasoning models.

    Markers are tried in list order and each one that matches narrows the
    working text further. An ``Answer:``/``Result:``/``Output:`` tail wins
    afterwards, and leading list bullets are trimmed. Falls back to the input
    when nothing is left.
    """
    extracted = response
    for marker in markers:
        start_index = extracted.find(marker.start)
        if start_index == -1:
            continue
        end_index = extracted.find(marker.end, start_index + len(marker.start))
        if end_index != -1:
            after = extracted[end_index + len(marker.end):].strip()
            if after:
                extracted = after
            else:
                before = extracted[:start_index].strip()
                if before:
                    extracted = before
        else:
            after_start = extracted[start_index + len(marker.start):].strip()
            for para in after_start.split("\n\n"):
                if len(para.strip()) > 20:
                    extracted = para.strip()
                    break

    match = _ANSWER_RE.search(extracted)
    if match and len(match.group(1).strip()) > 10:
        extracted = match.group(1).strip()

    extracted = _BULLET_RE.sub("", extracted).strip()
    return extracted or response


async def cancellable(fragments: AsyncIterator[str], flag: CancellationFlag) -> AsyncIterator[str]:
    """
    Yield fragments until the flag is raised; the flag is reset when it stops the stream.

    The source iterator is closed on the way out so an abandoned HTTP stream is
    released immediately.
    """
    try:
        async for fragment in fragments:
            if flag.is_raised:
                flag.reset()
                logger.info("Text generation stopped by cancellation flag")
                break
            yield fragment
    finally:
        if hasattr(fragments, "aclose"):
            await fragments.aclose()


class OpenAIChatGenerator:
    """Chat completions against an OpenAI-compatible server (Ollama, LM Studio, OpenAI)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        base_url = base_url.rstrip("/")
        if not base_url.endswith("/v1"):
            base_url = f"{base_url}/v1"
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
            http_client=http_client,
        )

    @classmethod
    def from_config(cls, cfg: AppConfig, http_client: Optional[httpx.AsyncClient] = None) -> "OpenAIChatGenerator":
        return cls(
            base_url=cfg.server_address,
            model=cfg.llm_model,
            api_key=cfg.openai_api_key,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout=cfg.request_timeout,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self._client.close()

    async def complete(self, request: CompletionRequest) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=build_messages(request),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APIError as e:
            raise GenerationError(f"Text generation failed: {e}") from e

        if not response.choices:
            raise GenerationError("Text generation returned no choices")
        message = response.choices[0].message
        content = message.content or ""
        # Some reasoning models leave content empty and answer in a side field.
        reasoning = getattr(message, "reasoning", None) or ""
        if not content.strip() and reasoning.strip():
            content = reasoning
        return content

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=build_messages(request),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            raise GenerationError(f"Text generation failed: {e}") from e


__all__ = [
    "NO_CONTEXT_PLACEHOLDER",
    "CompletionRequest",
    "TextGenerator",
    "CancellationFlag",
    "OpenAIChatGenerator",
    "build_context_block",
    "build_user_prompt",
    "build_messages",
    "extract_actual_response",
    "cancellable",
]
