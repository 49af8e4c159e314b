"""
Typed failures raised while parsing and evaluating docq queries.

Every error is a :class:`QueryError`. Runtime errors are catchable by
``try ... catch`` and suppressed by ``?`` and ``//``; a :class:`ParseError`
is raised before evaluation starts and is never catchable.
"""
from typing import Any, Optional


class QueryError(Exception):
    kind = 'QueryError'
    catchable = True

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.position = position

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"

    def __repr__(self) -> str:
        pos = f", position={self.position}" if self.position is not None else ""
        return f"{type(self).__name__}({self.message!r}{pos})"


class ParseError(QueryError):
    """Malformed query text. ``position`` is a 0-based offset into the query."""
    kind = 'ParseError'
    catchable = False

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message, position)


class QueryTypeError(QueryError):
    kind = 'TypeError'

    def __init__(self, expected: str, got: str, context: str, position: Optional[int] = None):
        super().__init__(f"{context} expects {expected}, got {got}", position)
        self.expected = expected
        self.got = got
        self.context = context


class PathNotFound(QueryError):
    kind = 'PathNotFound'

    def __init__(self, key: Any, message: Optional[str] = None):
        super().__init__(message or f"path not found: {key!r}")
        self.key = key


class IndexOutOfRange(QueryError):
    kind = 'IndexOutOfRange'

    def __init__(self, index: int, length: int):
        super().__init__(f"index {index} out of range for array of length {length}")
        self.index = index
        self.length = length


class DivisionByZero(QueryError):
    kind = 'DivisionByZero'

    def __init__(self, message: str = "division by zero"):
        super().__init__(message)


class RegexError(QueryError):
    kind = 'RegexError'


class CustomError(QueryError):
    """Raised by ``error(msg)``. ``value`` keeps the raw argument."""
    kind = 'Custom'

    def __init__(self, value: Any):
        if isinstance(value, str):
            message = value
        else:
            from docq.docq_values import to_json
            message = f"{to_json(value)} (not a string)"
        super().__init__(message)
        self.value = value


class DepthLimitExceeded(QueryError):
    kind = 'DepthLimit'
    catchable = False


__all__ = [
    "QueryError",
    "ParseError",
    "QueryTypeError",
    "PathNotFound",
    "IndexOutOfRange",
    "DivisionByZero",
    "RegexError",
    "CustomError",
    "DepthLimitExceeded",
]
