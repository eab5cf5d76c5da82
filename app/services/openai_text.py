import logging

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, OpenAIError

from app.core.exceptions import ChapterProviderError
from app.core.metrics import track_provider_call

logger = logging.getLogger(__name__)


class OpenAITextClient:
    """Thin wrapper over chat completions that normalises SDK failures.

    Every SDK error is re-raised as ``ChapterProviderError`` carrying the HTTP
    status and provider error code so callers can classify it without
    importing the SDK.
    """

    def __init__(
        self,
        api_key: str,
        default_model: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        client: OpenAI | None = None,
    ):
        self._default_model = default_model
        self._client = client or OpenAI(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=max_retries,
        )
        self.last_request_id: str | None = None
        self.last_model: str | None = None
        self.last_usage: dict | None = None

    def complete(self, system: str, user: str, model: str | None = None, operation: str = "complete") -> str:
        model_name = model or self._default_model
        try:
            with track_provider_call(operation):
                response = self._client.chat.completions.create(
                    model=model_name,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
        except APIStatusError as exc:
            code = getattr(exc, "code", None)
            logger.warning(
                "openai.%s failed model=%s status=%s code=%s",
                operation,
                model_name,
                exc.status_code,
                code,
            )
            raise ChapterProviderError(
                f"OpenAI {operation} failed: {exc.message}",
                status_code=exc.status_code,
                code=code,
            ) from exc
        except (APITimeoutError, APIConnectionError) as exc:
            logger.warning("openai.%s transport error model=%s error=%r", operation, model_name, exc)
            raise ChapterProviderError(f"OpenAI {operation} unreachable: {exc}") from exc
        except OpenAIError as exc:
            raise ChapterProviderError(f"OpenAI {operation} failed: {exc}") from exc

        self.last_request_id = getattr(response, "id", None)
        self.last_model = model_name
        usage = getattr(response, "usage", None)
        self.last_usage = usage.model_dump() if usage is not None else None

        choice = (response.choices or [None])[0]
        text = choice.message.content if choice is not None and choice.message else None
        if not text or not text.strip():
            raise ChapterProviderError(f"OpenAI {operation} returned empty content")
        return text.strip()
