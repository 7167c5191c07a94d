"""Explicit outcomes for operations whose failure is an expected value.

- Ok: success with a value
- Err: failure with a message, an optional code and a retryable flag
- Pass: nothing to do, with an optional reason

Wire parsing returns Err for malformed payloads and Pass for unknown part
types. Sending returns Pass when a message is ignored (duplicate, empty, or
an earlier send still unacknowledged) and Err when the backend rejects it.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class Result(ABC, Generic[T]):
    """Base class for Ok, Err and Pass."""

    def is_ok(self) -> bool:
        return isinstance(self, Ok)

    def is_err(self) -> bool:
        return isinstance(self, Err)

    def is_pass(self) -> bool:
        return isinstance(self, Pass)

    @abstractmethod
    def unwrap(self) -> T:
        """Return the value of an Ok result.

        Raises:
            ValueError: If this is an Err or a Pass.
        """


class Ok(Result[T]):
    def __init__(self, value: T):
        self._value = value

    def unwrap(self) -> T:
        return self._value

    def __repr__(self) -> str:
        return f"Ok({self._value!r})"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Ok) and self._value == other._value


class Err(Result[T]):
    def __init__(self, error: str, code: Optional[str] = None, retryable: bool = False):
        self.error = error
        self.code = code
        self.retryable = retryable

    def unwrap(self) -> T:
        raise ValueError(self.error)

    def __repr__(self) -> str:
        if self.code:
            return f"Err({self.error!r}, code={self.code!r}, retryable={self.retryable})"
        return f"Err({self.error!r})"

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, Err)
            and self.error == other.error
            and self.code == other.code
            and self.retryable == other.retryable
        )


class Pass(Result[T]):
    def __init__(self, message: Optional[str] = None):
        self.message = message

    def unwrap(self) -> T:
        raise ValueError(self.message or "Cannot unwrap Pass result")

    def __repr__(self) -> str:
        return f"Pass({self.message!r})" if self.message else "Pass()"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Pass) and self.message == other.message
