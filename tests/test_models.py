"""Tests for research_council/models.py and errors.py."""

from research_council.errors import AllCredentialsExhausted, CancelledByUser, NoUsableOutput, TransientError
from research_council.models import ErrorKind, GenerationRequest, Part, Persona


def test_persona_other():
    assert Persona.STRATEGIST.other() is Persona.IMPLEMENTER
    assert Persona.IMPLEMENTER.other() is Persona.STRATEGIST


def test_generation_request_from_text():
    request = GenerationRequest.from_text("m", "hello", temperature=0.2, operation="search")
    assert request.parts == (Part(text="hello"),)
    assert request.temperature == 0.2
    assert request.operation == "search"
    assert request.tools == ()


def test_generation_request_summary_truncates_and_flattens():
    request = GenerationRequest(
        model="m",
        parts=(Part(text="line one\nline two " + "x" * 50), Part(mime_type="image/png", data="AAAA")),
    )
    summary = request.summary(limit=20)
    assert summary.startswith("line one line two")
    assert "...[TRUNCATED]" in summary
    assert summary.endswith("(+1 attachment(s))")


def test_transient_error_message_and_fields():
    err = TransientError(ErrorKind.RATE_LIMITED, "quota exceeded", retry_after=12.0, status=429)
    assert str(err) == "rate_limited: quota exceeded"
    assert err.retry_after == 12.0
    assert err.status == 429


def test_cancelled_by_user_kind():
    err = CancelledByUser("synthesis")
    assert err.kind is ErrorKind.USER_CANCELLED
    assert "synthesis" in str(err)


def test_all_credentials_exhausted_message():
    last = TransientError(ErrorKind.SERVER_ERROR, "503")
    err = AllCredentialsExhausted("search", 4, last)
    assert str(err) == "All API keys failed for 'search' after 4 attempt(s). Last error: server_error: 503"


def test_no_usable_output_message():
    assert str(NoUsableOutput("outline", "nothing came back")) == "[outline] nothing came back"
