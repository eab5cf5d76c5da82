import contextvars
from contextlib import contextmanager
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
storybook_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("storybook_id", default=None)
chapter_number_var: contextvars.ContextVar[int | None] = contextvars.ContextVar("chapter_number", default=None)


def set_request_id(request_id: str) -> contextvars.Token:
    """Store the current request ID in a context variable."""
    return request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    request_id_var.reset(token)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_storybook_id() -> str | None:
    return storybook_id_var.get()


def get_chapter_number() -> int | None:
    return chapter_number_var.get()


@contextmanager
def log_context(
    storybook_id: uuid.UUID | str | None = None,
    chapter_number: int | None = None,
):
    """Temporarily scope storybook/chapter context for structured logs."""
    tokens: list[tuple[contextvars.ContextVar, contextvars.Token]] = []
    if storybook_id is not None:
        tokens.append((storybook_id_var, storybook_id_var.set(str(storybook_id))))
    if chapter_number is not None:
        tokens.append((chapter_number_var, chapter_number_var.set(chapter_number)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
