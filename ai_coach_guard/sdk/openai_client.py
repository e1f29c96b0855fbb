"""
OpenAI client wrapper for coaching answers.

Bounds every call by a timeout and converts provider failures into
classified AIInvocationErrors.
"""

from typing import Any, Optional

import openai
from openai import OpenAI

from ..core.errors import AIInvocationError
from ..storage.models import ErrorType


class CoachModelClient:
    """Generates coaching text with an OpenAI chat model.

    The underlying OpenAI client is created on first use so that
    components which never call the model do not need an API key.
    """

    def __init__(
        self,
        model: str,
        timeout_seconds: float = 30,
        max_output_tokens: int = 200,
        temperature: float = 0.7,
        client: Optional[Any] = None,
    ):
        """Initialize the coaching model client.

        Args:
            model: OpenAI model name (required)
            timeout_seconds: Upper bound for a single call
            max_output_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            client: Preconfigured OpenAI client (optional)

        Raises:
            ValueError: If model is missing/empty or timeout is not positive
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self._client = client

    @property
    def client(self):
        if self._client is None:
            # Retries would multiply the timeout bound
            self._client = OpenAI(timeout=self.timeout_seconds, max_retries=0)
        return self._client

    def generate(self, prompt: str) -> str:
        """Send a prompt and return the model's answer.

        Args:
            prompt: Prompt text (required)

        Returns:
            Answer text

        Raises:
            ValueError: If prompt is empty
            AIInvocationError: If the provider call fails, times out or
                returns no text
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
                timeout=self.timeout_seconds,
            )
        # APITimeoutError subclasses APIConnectionError, so it goes first
        except openai.APITimeoutError as e:
            raise AIInvocationError(ErrorType.NETWORK_ERROR, "TIMEOUT", str(e)) from e
        except openai.APIConnectionError as e:
            raise AIInvocationError(ErrorType.NETWORK_ERROR, "CONNECTION_ERROR", str(e)) from e
        except openai.APIStatusError as e:
            raise AIInvocationError(
                ErrorType.AI_MODEL_ERROR, f"HTTP_{e.status_code}", str(e)
            ) from e
        except openai.OpenAIError as e:
            raise AIInvocationError(ErrorType.API_ERROR, "OPENAI_ERROR", str(e)) from e

        content = None
        if response.choices:
            content = response.choices[0].message.content
        if not content or not content.strip():
            raise AIInvocationError(
                ErrorType.AI_MODEL_ERROR, "EMPTY_RESPONSE", "AI model returned an empty response"
            )
        return content.strip()
