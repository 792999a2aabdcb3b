"""Tests for the per-page inference handler."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from scriptorium.errors import ClientError, ErrorKind, TransientError
from scriptorium.interactive.inference import PageStageHandler
from scriptorium.interactive.processor import InteractiveProcessor
from scriptorium.library.models import Stage


def _completion(text, prompt_tokens=120, completion_tokens=40):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create.return_value = _completion("In principio erat verbum")
    return client


def test_ocr_result_is_stored(settings, db, payloads, openai_client, make_book):
    """Test a completion is written to the page and book counters updated."""
    make_book("b1", 2)
    handler = PageStageHandler(settings, db, Stage.OCR, payloads=payloads, client=openai_client)

    result = handler("b1-p001", timeout=30)

    assert result.text == "In principio erat verbum"
    page = db.get_page("b1-p001")
    assert page.ocr.source == "interactive"
    assert page.ocr.output_tokens == 40
    assert page.ocr.batch_job_id is None
    assert db.get_book("b1").pages_with_ocr == 1

    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["timeout"] == 30
    assert kwargs["temperature"] == 0.1
    content = kwargs["messages"][0]["content"]
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aW1hZ2U="


def test_translation_sends_text_only(settings, db, payloads, openai_client, make_book):
    make_book("b1", 2, ocr=True)
    handler = PageStageHandler(settings, db, Stage.TRANSLATE, payloads=payloads, client=openai_client)

    handler("b1-p002")

    content = openai_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert len(content) == 1
    assert "ocr text 2" in content[0]["text"]
    assert db.get_page("b1-p002").translation.source == "interactive"


def test_missing_page_is_client_error(settings, db, payloads, openai_client):
    handler = PageStageHandler(settings, db, Stage.OCR, payloads=payloads, client=openai_client)

    with pytest.raises(ClientError):
        handler("nope")
    openai_client.chat.completions.create.assert_not_called()


def test_missing_prerequisite_is_client_error(settings, db, payloads, openai_client, make_book):
    make_book("b1", 1)
    handler = PageStageHandler(settings, db, Stage.TRANSLATE, payloads=payloads, client=openai_client)

    with pytest.raises(ClientError):
        handler("b1-p001")


def test_empty_response_is_transient(settings, db, payloads, openai_client, make_book):
    make_book("b1", 1)
    openai_client.chat.completions.create.return_value = _completion("   ")
    handler = PageStageHandler(settings, db, Stage.OCR, payloads=payloads, client=openai_client)

    with pytest.raises(TransientError):
        handler("b1-p001")
    assert db.get_page("b1-p001").ocr is None


@patch("scriptorium.library.images.requests.get")
def test_image_timeout_is_retried(mock_get, settings, db, openai_client, make_book):
    """Test a storage timeout is transient and retried with backoff."""
    make_book("b1", 1)
    mock_get.side_effect = requests.Timeout("read timed out")
    sleeps = []
    handler = PageStageHandler(settings, db, Stage.OCR, client=openai_client)

    processor = InteractiveProcessor(handler, max_attempts=3, retry_base_delay=0.5, wave_pause=0, sleep=sleeps.append)
    report = processor.run(["b1-p001"])

    outcome = report.outcomes[0]
    assert mock_get.call_count == 3
    assert outcome.error_kind is ErrorKind.TRANSIENT
    assert sleeps == [0.5, 1.0]
    openai_client.chat.completions.create.assert_not_called()


@patch("scriptorium.library.images.requests.get")
def test_missing_image_is_not_retried(mock_get, settings, db, openai_client, make_book):
    make_book("b1", 1)
    response = requests.Response()
    response.status_code = 404
    response.url = "https://images.example/b1/1.jpg"
    mock_get.return_value = response
    handler = PageStageHandler(settings, db, Stage.OCR, client=openai_client)

    with pytest.raises(ClientError):
        handler("b1-p001")

    report = InteractiveProcessor(handler, max_attempts=3, wave_pause=0, sleep=lambda s: None).run(["b1-p001"])
    assert report.outcomes[0].attempts == 1
    assert report.outcomes[0].error_kind is ErrorKind.CLIENT
