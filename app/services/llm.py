"""
OpenAI chat model handle.

Uses the official openai SDK in streaming mode. The completion request is
issued when ``stream()`` is called; only token delivery is lazy.
"""
import logging
from typing import Dict, Iterator, List

from openai import OpenAI, APIError, RateLimitError as OpenAIRateLimitError, AuthenticationError as OpenAIAuthError

from app.errors import UpstreamError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are Walter, a friendly, patient AI for older adults.

Guidelines:
1. Be warm, concise, and helpful.
2. Use **Markdown formatting** to make your answers easy to read.
3. Use **Headings** (##) to organize topics.
4. Use **Bullet points** for lists.
5. bold key terms.
6. Avoid technical jargon unless asked.
7. If asked, your model is "GPT-4o Mini"."""


class ChatModel:
    def __init__(self, *, api_key: str | None, model_name: str = "gpt-4o-mini", system_prompt: str = SYSTEM_PROMPT):
        self.api_key = api_key
        self.model_name = model_name
        self.system_prompt = system_prompt
        self._client = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise UpstreamError("OpenAI API key not configured", status_code=500)
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def build_messages(self, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """System instruction first, then the transcript as-is."""
        return [{"role": "system", "content": self.system_prompt}, *history]

    def stream(self, history: List[Dict[str, str]]) -> "TokenStream":
        """Start a streaming completion and return its TokenStream."""
        try:
            completion = self.client.chat.completions.create(
                model=self.model_name,
                messages=self.build_messages(history),
                stream=True,
            )
        except OpenAIRateLimitError as e:
            raise UpstreamError("OpenAI API rate limit exceeded. Please try again later.") from e
        except OpenAIAuthError as e:
            raise UpstreamError("OpenAI API key is invalid.") from e
        except APIError as e:
            raise UpstreamError(f"OpenAI API error: {e}") from e
        return TokenStream(completion)


class TokenStream:
    """
    Content tokens of one streaming completion.

    ``close()`` releases the HTTP connection even if iteration never started.
    """

    def __init__(self, completion):
        self._completion = completion
        self._tokens = self._iter()

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        return next(self._tokens)

    def _iter(self) -> Iterator[str]:
        try:
            for chunk in self._completion:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except APIError as e:
            raise UpstreamError(f"OpenAI streaming error: {e}") from e
        finally:
            self._release()

    def _release(self) -> None:
        close = getattr(self._completion, "close", None)
        if close is not None:
            close()

    def close(self) -> None:
        self._tokens.close()
        self._release()
