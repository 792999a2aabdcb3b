"""Page and book records with typed pipeline stage results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional


ResultSource = Literal["batch", "interactive"]


class Stage(str, Enum):
    """Pipeline step applied to a page."""

    OCR = "ocr"
    TRANSLATE = "translate"
    SUMMARY = "summary"

    @property
    def field(self) -> str:
        """Name of the Page attribute holding this stage's result."""
        return STAGE_FIELDS[self]

    @property
    def prerequisite(self) -> Optional["Stage"]:
        return STAGE_PREREQUISITES[self]

    @classmethod
    def parse(cls, value: str) -> "Stage":
        """Accept both stage values and page field names ("translation")."""
        value = value.strip().lower()
        for stage in cls:
            if value in (stage.value, stage.field):
                return stage
        raise ValueError(f"Unknown stage: {value}")


STAGE_FIELDS = {
    Stage.OCR: "ocr",
    Stage.TRANSLATE: "translation",
    Stage.SUMMARY: "summary",
}

STAGE_PREREQUISITES = {
    Stage.OCR: None,
    Stage.TRANSLATE: Stage.OCR,
    Stage.SUMMARY: Stage.TRANSLATE,
}


@dataclass
class StageResult:
    """Output of one pipeline stage for a page."""

    text: str
    model: Optional[str] = None
    source: ResultSource = "batch"
    language: Optional[str] = None
    batch_job_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["StageResult"]:
        """Build a result from a stored mapping.

        Unknown keys are dropped, and a mapping without non-empty text is
        treated as no result at all.
        """
        if not data or not isinstance(data, dict):
            return None
        text = data.get("text") or data.get("data")
        if not isinstance(text, str) or not text.strip():
            return None
        return cls(
            text=text,
            model=data.get("model"),
            source=data.get("source") or "batch",
            language=data.get("language"),
            batch_job_id=data.get("batch_job_id"),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "model": self.model,
            "source": self.source,
            "language": self.language,
            "batch_job_id": self.batch_job_id,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Page:
    """One scanned leaf of a book."""

    id: str
    book_id: str
    page_number: int
    photo: Optional[str] = None
    cropped_photo: Optional[str] = None
    ocr: Optional[StageResult] = None
    translation: Optional[StageResult] = None
    summary: Optional[StageResult] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def image_url(self) -> Optional[str]:
        """Source image, preferring the cropped version of split pages."""
        return self.cropped_photo or self.photo

    def result(self, stage: Stage) -> Optional[StageResult]:
        return getattr(self, stage.field)

    def has_result(self, stage: Stage) -> bool:
        result = self.result(stage)
        return result is not None and bool(result.text.strip())

    def needs(self, stage: Stage) -> bool:
        """True when the stage is outstanding and its prerequisite is done."""
        if self.has_result(stage):
            return False
        prerequisite = stage.prerequisite
        return prerequisite is None or self.has_result(prerequisite)


@dataclass
class Book:
    """A collection of pages with derived progress counters."""

    id: str
    title: str
    display_title: Optional[str] = None
    language: str = "Latin"
    pages_count: int = 0
    pages_with_ocr: int = 0
    pages_translated: int = 0
    pages_summarized: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.display_title or self.title


@dataclass
class BookCounts:
    """Aggregate counters recomputed from page state."""

    pages_count: int = 0
    pages_with_ocr: int = 0
    pages_translated: int = 0
    pages_summarized: int = 0


@dataclass
class BookBacklog:
    """Outstanding work for one book, per stage."""

    book: Book
    outstanding: dict = field(default_factory=dict)

    def count(self, stage: Stage) -> int:
        return self.outstanding.get(stage, 0)


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
