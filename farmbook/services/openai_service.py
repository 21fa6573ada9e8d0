"""
OpenAI chat/vision completions with error mapping.

The AsyncOpenAI client is created and closed by the application lifespan
and passed in here.
"""

from typing import Any

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)
from structlog import get_logger

from farmbook.exceptions import ExternalErrorKind, ExternalServiceError
from farmbook.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "openai"


class OpenAIService:
    """Thin async wrapper around chat completions."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self.client = client
        self.model = model

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float,
        operation: str,
    ) -> str:
        """
        Return the text of the first choice.

        Raises:
            ExternalServiceError: any API failure or an empty reply
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except AuthenticationError as exc:
            raise self._error(
                ExternalErrorKind.AUTH_FAILURE,
                "The AI service rejected our API key; contact support.",
                operation,
                exc,
            ) from exc
        except RateLimitError as exc:
            raise self._error(
                ExternalErrorKind.RATE_LIMITED,
                "The AI service is busy; try again in a minute.",
                operation,
                exc,
            ) from exc
        except APITimeoutError as exc:
            raise self._error(
                ExternalErrorKind.TIMEOUT,
                "The AI service took too long to answer; try again.",
                operation,
                exc,
            ) from exc
        except BadRequestError as exc:
            raise self._error(
                ExternalErrorKind.INVALID_REQUEST,
                "The AI service could not process this input; try a different image or message.",
                operation,
                exc,
            ) from exc
        except (APIConnectionError, APIError) as exc:
            raise self._error(
                ExternalErrorKind.TRANSIENT,
                "The AI service is unavailable; try again later.",
                operation,
                exc,
            ) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise self._error(
                ExternalErrorKind.TRANSIENT,
                "The AI service returned an empty answer; try again.",
                operation,
                None,
            )

        usage = response.usage
        logger.info(
            "openai_completion_succeeded",
            operation=operation,
            model=self.model,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
        )
        return content

    def _error(
        self,
        kind: ExternalErrorKind,
        message: str,
        operation: str,
        exc: Exception | None,
    ) -> ExternalServiceError:
        metrics.record_external_error(SERVICE, kind.value)
        logger.error(
            "openai_completion_failed",
            operation=operation,
            kind=kind.value,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )
        return ExternalServiceError(SERVICE, kind, message)
