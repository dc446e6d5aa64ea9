"""Tests for the error classes and stored-error helpers."""

import pytest

from core.errors import (
    EncodeError,
    InvalidPayloadError,
    RecordNotFoundError,
    TranscodeError,
    sanitize_error_message,
    truncate_error,
)


class TestTruncateError:
    """Tests for truncate_error."""

    def test_none_passes_through(self):
        assert truncate_error(None) is None

    def test_short_message_unchanged(self):
        assert truncate_error("boom", max_length=10) == "boom"

    def test_keeps_tail(self):
        """The end of encoder output carries the actual failure, so it survives."""
        message = "frame=1\n" * 50 + "Conversion failed!"
        result = truncate_error(message, max_length=60)

        assert len(result) == 60
        assert result.startswith("...[truncated] ")
        assert result.endswith("Conversion failed!")


class TestSanitizeErrorMessage:
    """Tests for sanitize_error_message."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            ("Encoder timed out after 60s", "Encoding timed out."),
            ("Encoder exited with code 1\nConversion failed!", "Encoding failed. Check the encoder output in the worker log."),
            ("video 12 not found", "Source video or profile record is missing."),
            ("Permission denied", "Could not write transcoded output."),
            ("Traceback: File \"/app/worker/pool.py\", line 10", "Transcoding failed."),
            ("short message", "short message"),
        ],
    )
    def test_summaries(self, error, expected):
        assert sanitize_error_message(error) == expected

    def test_none(self):
        assert sanitize_error_message(None) is None


class TestExceptions:
    """Tests for exception attributes."""

    def test_all_derive_from_base(self):
        for exc in (InvalidPayloadError("x", "bad"), RecordNotFoundError("video", 1), EncodeError("x")):
            assert isinstance(exc, TranscodeError)

    def test_encode_error_diagnostic(self):
        exc = EncodeError("Encoder exited with code 1", 1, "Conversion failed!")
        assert exc.returncode == 1
        assert exc.diagnostic == "Encoder exited with code 1\nConversion failed!"
        assert EncodeError("no output").diagnostic == "no output"

    def test_record_not_found_message(self):
        exc = RecordNotFoundError("profile", 7)
        assert str(exc) == "profile 7 not found"
        assert exc.kind == "profile"
        assert exc.record_id == 7
