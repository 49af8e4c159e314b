"""
Printers for docq: expression trees back to query text, and result
sequences to the json / compact / raw / yaml output forms.
"""
import json
import math
from typing import Any, Iterable

import yaml

from docq.docq_values import to_json
from docq.docq_datatypes import (
    Expression, Identity, RecursiveDescent, Literal, Variable,
    FieldAccess, IndexAccess, SliceAccess, Wildcard,
    Pipe, BinaryOp, Not, Negate, Alternative, OptionalOp, TryCatch,
    Conditional, FunctionCall, ObjectConstruction, ArrayConstruction,
    Binding, Assignment,
)
from docq.docq_transformer import KEYWORDS

# Binding strength of each node kind; higher binds tighter.
_PIPE, _ASSIGN, _ALT, _OR, _AND, _CMP, _ADD, _MUL, _UNARY, _POSTFIX = range(10)

_BINARY_PREC = {
    'or': _OR, 'and': _AND,
    '==': _CMP, '!=': _CMP, '<': _CMP, '<=': _CMP, '>': _CMP, '>=': _CMP,
    '+': _ADD, '-': _ADD, '*': _MUL, '/': _MUL, '%': _MUL,
}

OUTPUT_FORMATS = ('json', 'compact', 'raw', 'yaml')


def _is_ident(name: str) -> bool:
    return bool(name) and (name[0].isalpha() or name[0] == '_') \
        and all(c.isalnum() or c == '_' for c in name) and name not in KEYWORDS


def _finite(value: Any) -> Any:
    """Replaces non-finite floats, which JSON cannot spell."""
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return None
        return 1.7976931348623157e+308 if value > 0 else -1.7976931348623157e+308
    if isinstance(value, list):
        return [_finite(v) for v in value]
    if isinstance(value, dict):
        return {k: _finite(v) for k, v in value.items()}
    return value


class Printer:
    """Formats docq expressions as query text and results as output text."""

    def __init__(self, indent_width=2):
        self.indent_width = indent_width
        self._handlers = self._create_handlers()
        self._formats = {
            'json': self._render_json,
            'compact': self._render_compact,
            'raw': self._render_raw,
            'yaml': self._render_yaml,
        }

    # --- query text ---

    def pformat(self, expr: Expression) -> str:
        """Public entry point to format an expression as query text."""
        handler = self._handlers.get(type(expr))
        if handler is None:
            return repr(expr)
        return handler(expr)

    def _create_handlers(self):
        return {
            Identity: lambda e: '.',
            RecursiveDescent: lambda e: '..',
            Literal: self._pformat_literal,
            Variable: lambda e: f"${e.name}",
            FieldAccess: self._pformat_field,
            IndexAccess: self._pformat_index,
            SliceAccess: self._pformat_slice,
            Wildcard: lambda e: f"{self._postfix_base(e.target)}[]",
            OptionalOp: lambda e: f"{self._wrap(e.inner, _POSTFIX)}?",
            Pipe: lambda e: f"{self._wrap(e.lhs, _ASSIGN)} | {self.pformat(e.rhs)}",
            Binding: lambda e: f"{self._wrap(e.source, _ASSIGN)} as ${e.name} | {self.pformat(e.body)}",
            Assignment: lambda e: f"{self._wrap(e.target, _ALT)} {e.op} {self._wrap(e.value, _ALT)}",
            Alternative: lambda e: f"{self._wrap(e.lhs, _OR)} // {self._wrap(e.rhs, _ALT)}",
            BinaryOp: self._pformat_binary,
            Not: lambda e: f"not {self._wrap(e.operand, _UNARY)}",
            Negate: lambda e: f"-{self._wrap(e.operand, _UNARY)}",
            FunctionCall: self._pformat_call,
            Conditional: self._pformat_if,
            TryCatch: self._pformat_try,
            ObjectConstruction: self._pformat_object,
            ArrayConstruction: lambda e: "[" + ", ".join(self.pformat(i) for i in e.items) + "]",
        }

    def _precedence(self, expr: Expression) -> int:
        match expr:
            case Pipe() | Binding():
                return _PIPE
            case Assignment():
                return _ASSIGN
            case Alternative():
                return _ALT
            case BinaryOp(op=op):
                return _BINARY_PREC[op]
            case Not() | Negate():
                return _UNARY
            case Literal(value=v) if isinstance(v, (int, float)) and not isinstance(v, bool) and v < 0:
                return _UNARY
        return _POSTFIX

    def _wrap(self, expr: Expression, min_prec: int) -> str:
        text = self.pformat(expr)
        return f"({text})" if self._precedence(expr) < min_prec else text

    def _postfix_base(self, target: Expression) -> str:
        """The text an accessor is appended to; a bare `.` is left implicit."""
        if isinstance(target, Identity):
            return '.'
        return self._wrap(target, _POSTFIX)

    def _pformat_literal(self, e: Literal) -> str:
        v = e.value
        if e.bare and isinstance(v, str):
            return v
        if isinstance(v, float):
            return repr(v) if math.isfinite(v) else json.dumps(_finite(v))
        return json.dumps(v, ensure_ascii=False)

    def _pformat_field(self, e: FieldAccess) -> str:
        name = e.name if _is_ident(e.name) else json.dumps(e.name, ensure_ascii=False)
        if isinstance(e.target, Identity):
            return f".{name}"
        return f"{self._wrap(e.target, _POSTFIX)}.{name}"

    def _pformat_index(self, e: IndexAccess) -> str:
        return f"{self._postfix_base(e.target)}[{self.pformat(e.index)}]"

    def _pformat_slice(self, e: SliceAccess) -> str:
        start = self.pformat(e.start) if e.start is not None else ""
        end = self.pformat(e.end) if e.end is not None else ""
        return f"{self._postfix_base(e.target)}[{start}:{end}]"

    def _pformat_binary(self, e: BinaryOp) -> str:
        prec = _BINARY_PREC[e.op]
        # Comparisons do not chain, so both sides must bind tighter.
        lhs_min = prec + 1 if prec == _CMP else prec
        return f"{self._wrap(e.lhs, lhs_min)} {e.op} {self._wrap(e.rhs, prec + 1)}"

    def _pformat_call(self, e: FunctionCall) -> str:
        if not e.args:
            return e.name
        return f"{e.name}({'; '.join(self.pformat(a) for a in e.args)})"

    def _pformat_if(self, e: Conditional) -> str:
        parts = [f"if {self.pformat(e.cond)} then {self.pformat(e.then)}"]
        for cond, then in e.elifs:
            parts.append(f"elif {self.pformat(cond)} then {self.pformat(then)}")
        if e.otherwise is not None:
            parts.append(f"else {self.pformat(e.otherwise)}")
        parts.append("end")
        return " ".join(parts)

    def _pformat_try(self, e: TryCatch) -> str:
        text = f"try {self._wrap(e.body, _POSTFIX)}"
        if e.handler is not None:
            text += f" catch {self._wrap(e.handler, _POSTFIX)}"
        return text

    def _pformat_object(self, e: ObjectConstruction) -> str:
        entries = []
        for key, value in e.entries:
            if isinstance(key, Literal) and isinstance(key.value, str):
                k = key.value if _is_ident(key.value) else json.dumps(key.value, ensure_ascii=False)
            else:
                k = f"({self.pformat(key)})"
            entries.append(f"{k}: {self.pformat(value)}")
        return "{" + ", ".join(entries) + "}"

    # --- output forms ---

    def render(self, results: Iterable[Any], fmt: str = 'json') -> str:
        """Renders a result sequence, one result per line (yaml: one document each)."""
        handler = self._formats.get(fmt)
        if handler is None:
            raise ValueError(f"Unsupported output format: {fmt!r} (expected one of {', '.join(OUTPUT_FORMATS)})")
        rendered = [handler(v) for v in results]
        if fmt == 'yaml':
            return "\n---\n".join(rendered)
        return "\n".join(rendered)

    def _render_json(self, value: Any) -> str:
        return to_json(_finite(value), indent=self.indent_width)

    def _render_compact(self, value: Any) -> str:
        return to_json(_finite(value))

    def _render_raw(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        return self._render_json(value)

    def _render_yaml(self, value: Any) -> str:
        text = yaml.safe_dump(_finite(value), sort_keys=False, allow_unicode=True, default_flow_style=False)
        if text.endswith("\n...\n"):
            text = text[:-len("...\n")]
        return text.rstrip("\n")
