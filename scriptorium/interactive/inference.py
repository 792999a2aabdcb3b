"""Synchronous per-page inference through an OpenAI-compatible endpoint."""

from datetime import datetime
from typing import Optional

import httpx
import openai

from ..batch.payload import PayloadBuilder, PayloadSkip
from ..config import Settings
from ..errors import ClientError, ErrorKind, TransientError
from ..library.db import LibraryDB
from ..library.images import ImageFetchError
from ..library.models import Stage, StageResult
from ..logger import logger as LOGGER


class PageStageHandler:
    """Runs one stage for one page and stores the result.

    Instances are callable as ``handler(page_id, timeout)`` and are safe to
    share between worker threads.
    """

    def __init__(
        self,
        settings: Settings,
        db: LibraryDB,
        stage: Stage,
        payloads: Optional[PayloadBuilder] = None,
        client: Optional[openai.OpenAI] = None,
    ):
        self.settings = settings
        self.db = db
        self.stage = stage
        self.model = settings.interactive_model
        self.payloads = payloads or PayloadBuilder(settings)
        self.client = client or self._initialize_client()

    def _initialize_client(self) -> openai.OpenAI:
        api_key = self.settings.require_api_key()
        masked_key = api_key[:4] + "..." + api_key[-4:] if len(api_key) > 8 else "***"
        LOGGER.debug(f"Initializing inference client with key {masked_key} at {self.settings.inference_base_url}")
        # Retries are driven by InteractiveProcessor
        return openai.OpenAI(
            api_key=api_key,
            base_url=self.settings.inference_base_url,
            http_client=httpx.Client(),
            max_retries=0,
        )

    def _messages(self, page_id: str) -> tuple[list[dict], float, Optional[str]]:
        page = self.db.get_page(page_id)
        if page is None:
            raise ClientError(f"Page not found: {page_id}")

        book = self.db.get_book(page.book_id)
        language = (book.language if book else None) or self.settings.default_language

        previous = None
        if self.stage is Stage.TRANSLATE:
            previous = next((p for p in self.db.list_pages(page.book_id) if p.page_number == page.page_number - 1), None)

        try:
            parts = self.payloads.prompt_parts(page, self.stage, language, previous)
        except PayloadSkip as e:
            cause = e.__cause__
            if isinstance(cause, ImageFetchError) and cause.kind is ErrorKind.TRANSIENT:
                raise TransientError(str(e)) from e
            raise ClientError(str(e)) from e

        content = [{"type": "text", "text": parts.text}]
        if parts.image_base64:
            content.append(
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{parts.image_base64}"}}
            )
        return [{"role": "user", "content": content}], parts.temperature, language

    def __call__(self, page_id: str, timeout: float = 120.0) -> StageResult:
        messages, temperature, language = self._messages(page_id)

        completion = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=self.settings.max_output_tokens,
            timeout=timeout,
        )

        text = None
        if completion.choices and completion.choices[0].message:
            text = completion.choices[0].message.content
        if not text or not text.strip():
            raise TransientError(f"Empty response for page {page_id}")

        usage = getattr(completion, "usage", None)
        now = datetime.utcnow()
        result = StageResult(
            text=text,
            model=self.model,
            source="interactive",
            language=language,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            created_at=now,
            updated_at=now,
        )
        self.db.set_stage_result(page_id, self.stage, result)

        page = self.db.get_page(page_id)
        if page is not None:
            self.db.update_book_counts(page.book_id)

        LOGGER.info(f"Page {page_id}: {self.stage.value} done ({result.output_tokens} tokens)")
        return result
