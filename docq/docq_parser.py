"""
Parses docq queries with koine.

The grammar is data, ``docq_grammar.yaml``. Precedence, lowest first::

    pipe        a | b, term as $x | body     (right assoc)
    assignment  a = b, a |= b, a += b ...    (non assoc)
    alternative a // b                       (right assoc)
    or / and
    comparison  == != < <= > >=              (non assoc)
    additive    + -
    multiplicative * / %
    unary       not x, -x
    postfix     .name ."name" [i] [a:b] [] [*] .* ?
    primary     literals, (..), [..], {..}, if, try, calls, $var, . and ..

koine produces a raw tree of tagged dicts; :class:`DocqTransformer` turns
it into :mod:`docq_datatypes` nodes. The parser is handed the builtin
function table (name -> (min, max) arity) so unknown functions and arity
mistakes are reported before evaluation.
"""
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from koine import Parser as GrammarParser

from docq.docq_errors import ParseError
from docq.docq_datatypes import Expression, Assignment
from docq.docq_transformer import DocqTransformer

GRAMMAR_PATH = Path(__file__).parent / "docq_grammar.yaml"

_OPENERS = {')': '(', ']': '[', '}': '{'}
_TOKEN = re.compile(r'\$?\w+|//=?|\|=?|[=!<>]=?|\.\.?|\S')


def check_brackets(query: str, max_depth: int):
    """
    Reports unbalanced brackets, unterminated strings and over-deep nesting
    with the offending position, before the grammar runs.
    """
    stack = []
    i, n = 0, len(query)
    while i < n:
        ch = query[i]
        if ch == '"':
            start = i
            i += 1
            while i < n and query[i] != '"':
                i += 2 if query[i] == '\\' else 1
            if i >= n:
                raise ParseError("unterminated string", start)
        elif ch == '#':
            while i < n and query[i] != '\n':
                i += 1
            continue
        elif ch in '([{':
            stack.append((ch, i))
            # The query itself is the first level.
            if len(stack) + 1 > max_depth:
                raise ParseError(f"query nested deeper than {max_depth} levels", i)
        elif ch in _OPENERS:
            if not stack or stack[-1][0] != _OPENERS[ch]:
                raise ParseError(f"unbalanced {ch!r}", i)
            stack.pop()
        i += 1
    if stack:
        ch, pos = stack[-1]
        raise ParseError(f"unbalanced {ch!r}", pos)


class Parser:
    """
    Parses query text into an :class:`Expression` tree.

    ``functions`` maps builtin names to their ``(min_arity, max_arity)``.
    When omitted, the table of the standard library is used.
    """

    _grammar: Optional[GrammarParser] = None   # koine parser, built once

    def __init__(self, functions: Optional[Dict[str, Tuple[int, int]]] = None, max_depth: int = 64):
        if functions is None:
            from docq.docq_runtime import StdLib
            functions = StdLib.signatures()
        self.functions = functions
        self.max_depth = max_depth

    @classmethod
    def grammar(cls) -> GrammarParser:
        if cls._grammar is None:
            with GRAMMAR_PATH.open(encoding="utf-8") as f:
                cls._grammar = GrammarParser(yaml.safe_load(f))
        return cls._grammar

    # --- public API ---

    def parse(self, query: str) -> Expression:
        """Parses a complete query. An empty query is the identity."""
        check_brackets(query, self.max_depth)
        try:
            parse_out = self.grammar().parse(query)
        except RecursionError:
            raise ParseError("query nested too deeply", 0) from None
        except Exception as e:
            # koine reports some failures by raising
            raise ParseError(f"invalid query ({e})", 0) from e

        if isinstance(parse_out, dict) and 'status' in parse_out:
            if parse_out.get('status') != 'success':
                raise self._syntax_error(query, parse_out)
            ast_node = parse_out['ast']
        else:
            ast_node = parse_out
        try:
            return DocqTransformer(query, self.functions).transform(ast_node)
        except RecursionError:
            raise ParseError("query nested too deeply", 0) from None

    def parse_assignment(self, query: str) -> Assignment:
        """Parses a write-mode query, which must be a single assignment."""
        expr = self.parse(query)
        if not isinstance(expr, Assignment):
            raise ParseError("expected an assignment (=, |=, +=, -=, *=, /=, %=, //=)", 0)
        return expr

    # --- errors ---

    @staticmethod
    def _syntax_error(query: str, parse_out: Dict[str, Any]) -> ParseError:
        node = parse_out.get('error_node') or {}
        line, col = node.get('line'), node.get('col')
        if line is None or col is None:
            return ParseError(f"invalid query: {parse_out.get('error_message') or 'parse failed'}")
        lines = query.split('\n')
        pos = sum(len(text) + 1 for text in lines[:line - 1]) + col - 1
        if pos >= len(query.rstrip()):
            return ParseError("unexpected end of query", pos)
        token = _TOKEN.match(query, pos)
        return ParseError(f"unexpected {token.group() if token else query[pos]}", pos)
