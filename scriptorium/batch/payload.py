"""Prompt and request construction for page stages."""

import json
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..config import Settings
from ..library.images import ImageFetchError, load_page_image_base64
from ..library.models import Page, Stage
from ..logger import logger as LOGGER


OCR_PROMPT = """Transcribe this {language} manuscript page to Markdown.

**Format:**
- # ## ### for headings (bigger text = bigger heading)
- **bold**, *italic* for emphasis
- ->centered text<- for centered lines (NOT for headings)
- > blockquotes for quotes/prayers
- --- for dividers

Use markdown tables ONLY for actual tabular data with clear rows and columns.

**Metadata tags (hidden from readers):**
- <lang>detected</lang> for the detected language
- <page-num>N</page-num> for visible page/folio numbers (NOT in body text)
- <header>X</header> for running headers (NOT in body text)
- <sig>X</sig> for printer's marks like A2, B1 (NOT in body text)
- <warning>X</warning> for quality issues (faded, damaged, blurry)

Preserve original spelling, abbreviations and line breaks. Output only the transcription."""

TRANSLATION_PROMPT = (
    "Translate the following {language} text to {target_language}. Preserve formatting and "
    "paragraph breaks. Maintain continuity with the previous page if provided.\n\n{text}{context}"
)

SUMMARY_PROMPT = (
    "Summarize the following page from a historical {language} book in 2-3 sentences of "
    "{target_language}. Name the main topics, people and works mentioned.\n\n{text}"
)

OCR_TEMPERATURE = 0.1
TEXT_TEMPERATURE = 0.3

PREVIOUS_TRANSLATION_CHARS = 2000
PREVIOUS_OCR_CHARS = 1500


class PayloadSkip(Exception):
    """Raised when a page's input cannot be prepared; the page is left out."""

    pass


@dataclass
class PromptParts:
    """Stage input independent of wire format."""

    text: str
    temperature: float
    image_base64: Optional[str] = None


def _tail(text: str, limit: int) -> str:
    return text[-limit:] + ("..." if len(text) > limit else "")


def previous_page_context(previous: Optional[Page]) -> str:
    """Continuity context taken from the preceding page, if any."""
    if previous is None:
        return ""
    if previous.translation and previous.translation.text.strip():
        return (
            "\n\n**Previous page translation for continuity:**\n"
            + _tail(previous.translation.text, PREVIOUS_TRANSLATION_CHARS)
        )
    if previous.ocr and previous.ocr.text.strip():
        return "\n\n**Previous page text for continuity:**\n" + _tail(previous.ocr.text, PREVIOUS_OCR_CHARS)
    return ""


ImageLoader = Callable[[str], str]


class PayloadBuilder:
    """Turns pages into provider requests for one stage."""

    def __init__(self, settings: Settings, image_loader: Optional[ImageLoader] = None):
        self.settings = settings
        self._image_loader = image_loader or self._load_image

    def _load_image(self, url: str) -> str:
        return load_page_image_base64(
            url,
            max_width=self.settings.image_max_width,
            quality=self.settings.jpeg_quality,
            timeout=self.settings.image_fetch_timeout,
        )

    def prompt_parts(
        self,
        page: Page,
        stage: Stage,
        language: str,
        previous: Optional[Page] = None,
    ) -> PromptParts:
        """Build the stage input for one page.

        Raises:
            PayloadSkip: If the image or prerequisite text is unavailable
        """
        target = self.settings.target_language

        if stage is Stage.OCR:
            url = page.image_url
            if not url:
                raise PayloadSkip(f"Page {page.id} has no image")
            try:
                image = self._image_loader(url)
            except ImageFetchError as e:
                raise PayloadSkip(str(e)) from e
            return PromptParts(
                text=OCR_PROMPT.format(language=language),
                temperature=OCR_TEMPERATURE,
                image_base64=image,
            )

        if stage is Stage.TRANSLATE:
            if not page.has_result(Stage.OCR):
                raise PayloadSkip(f"Page {page.id} has no OCR text")
            return PromptParts(
                text=TRANSLATION_PROMPT.format(
                    language=language,
                    target_language=target,
                    text=page.ocr.text,
                    context=previous_page_context(previous),
                ),
                temperature=TEXT_TEMPERATURE,
            )

        if not page.has_result(Stage.TRANSLATE):
            raise PayloadSkip(f"Page {page.id} has no translation")
        return PromptParts(
            text=SUMMARY_PROMPT.format(language=language, target_language=target, text=page.translation.text),
            temperature=TEXT_TEMPERATURE,
        )

    def build_request(
        self,
        page: Page,
        stage: Stage,
        language: str,
        previous: Optional[Page] = None,
    ) -> dict:
        """Build one keyed batch request line."""
        parts = self.prompt_parts(page, stage, language, previous)
        content = [{"text": parts.text}]
        if parts.image_base64:
            content.append({"inline_data": {"mime_type": "image/jpeg", "data": parts.image_base64}})
        return {
            "key": page.id,
            "request": {
                "contents": [{"role": "user", "parts": content}],
                "generation_config": {
                    "temperature": parts.temperature,
                    "max_output_tokens": self.settings.max_output_tokens,
                },
            },
        }

    def build_requests(
        self,
        pages: Iterable[Page],
        stage: Stage,
        language: str,
        neighbours: Optional[dict[int, Page]] = None,
    ) -> tuple[list[dict], list[str]]:
        """Build requests for a chunk of pages from one book.

        Args:
            pages: Pages to include
            stage: Stage being requested
            language: Source language of the book
            neighbours: All pages of the book keyed by page number, used for
                        previous-page context

        Returns:
            Tuple of (requests, skipped page ids)
        """
        neighbours = neighbours or {}
        requests, skipped = [], []
        for page in pages:
            try:
                requests.append(self.build_request(page, stage, language, neighbours.get(page.page_number - 1)))
            except PayloadSkip as e:
                LOGGER.info(f"Skipping page {page.id}: {e}")
                skipped.append(page.id)
        return requests, skipped


def to_jsonl(requests: Iterable[dict]) -> str:
    return "\n".join(json.dumps(r, ensure_ascii=False) for r in requests) + "\n"
