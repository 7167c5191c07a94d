"""Tests for Result pattern (Ok/Err/Pass).

Tests verify that Result types provide explicit outcome handling with:
- Ok: Success with value
- Err: Failure with error, error code, and retryable flag
- Pass: Neutral outcome with optional message
"""

import pytest

from kestrel_chat.core.result import Err, Ok, Pass, Result


class TestResultTypeBasics:
    """Test basic Result type creation and methods."""

    def test_ok_result_creation(self):
        """Ok can be created with a value."""
        result = Ok("success value")
        assert result.is_ok() is True
        assert result.is_err() is False
        assert result.is_pass() is False
        assert result.unwrap() == "success value"

    def test_err_result_with_code_and_retryable(self):
        """Err carries message, code and retryable flag."""
        result = Err("timeout", code="SEND_FAILED", retryable=True)
        assert result.is_err() is True
        assert result.is_ok() is False
        assert result.error == "timeout"
        assert result.code == "SEND_FAILED"
        assert result.retryable is True

    def test_err_default_retryable_is_false(self):
        """Err is not retryable unless stated."""
        assert Err("bad").retryable is False

    def test_pass_result_creation(self):
        """Pass carries an optional message."""
        result = Pass("duplicate message ignored")
        assert result.is_pass() is True
        assert result.is_ok() is False
        assert result.message == "duplicate message ignored"
        assert Pass().message is None

    def test_results_are_results(self):
        """All three outcomes share the Result base."""
        for result in (Ok(1), Err("x"), Pass()):
            assert isinstance(result, Result)


class TestResultUnwrap:
    """Only Ok can be unwrapped."""

    def test_err_unwrap_raises_value_error(self):
        with pytest.raises(ValueError, match="boom"):
            Err("boom").unwrap()

    def test_pass_unwrap_raises_with_reason(self):
        with pytest.raises(ValueError, match="empty message"):
            Pass("empty message").unwrap()
        with pytest.raises(ValueError, match="Cannot unwrap Pass result"):
            Pass().unwrap()


class TestResultEquality:
    def test_equal_results_compare_equal(self):
        assert Ok([1]) == Ok([1])
        assert Err("a", code="C") == Err("a", code="C")
        assert Err("a", code="C") != Err("a", code="D")
        assert Pass("m") == Pass("m")
        assert Ok(1) != Pass()

    def test_repr(self):
        assert repr(Ok(1)) == "Ok(1)"
        assert repr(Err("x", code="NOT_FOUND")) == "Err('x', code='NOT_FOUND', retryable=False)"
        assert repr(Pass()) == "Pass()"
