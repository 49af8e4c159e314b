"""
Transforms the raw koine parse tree into docq expression nodes.

The grammar only knows shapes. Everything that depends on context is
decided here: whether a bare word is a builtin call, a field or a string,
which ``$name`` references are bound, and builtin arity.
"""
import json
from typing import Any, Dict, List, Optional, Tuple

from docq.docq_errors import ParseError
from docq.docq_datatypes import (
    Expression, Identity, RecursiveDescent, Literal, Variable,
    FieldAccess, IndexAccess, SliceAccess, Wildcard,
    Pipe, BinaryOp, Not, Negate, Alternative, OptionalOp, TryCatch,
    Conditional, FunctionCall, ObjectConstruction, ArrayConstruction,
    Binding, Assignment, Path, Field, Index, Slice,
)

KEYWORDS = frozenset({
    'if', 'then', 'elif', 'else', 'end', 'try', 'catch',
    'and', 'or', 'not', 'as', 'true', 'false', 'null',
})

# Tags the transformer reads. Any other raw node is structure only and its
# children are spliced into the parent.
NODE_TAGS = frozenset({
    'query', 'pipe', 'binding', 'pipe_rest', 'assignment', 'alternative',
    'binary', 'comparison', 'not', 'negate', 'postfix', 'bracket', 'slice',
    'slice_from', 'slice_to', 'paren', 'array', 'object', 'entry', 'if', 'elif',
    'else', 'try', 'catch', 'call', 'number', 'string', 'constant', 'identity',
    'recurse', 'recurse_field', 'dot_star', 'field', 'quoted_field', 'question',
    'star', 'variable', 'name', 'key_name', 'word', 'bare_text', 'op',
})

# A bare word directly followed by one of these names a field of the input.
_ACCESSOR_TAGS = ('field', 'quoted_field', 'bracket', 'dot_star')

_CONSTANTS = {'true': True, 'false': False, 'null': None}


def path_from_expression(expr: Expression) -> Optional[Path]:
    """
    Converts a static accessor chain into a write-mode Path.
    Returns None when the target needs the input to resolve (``.[]``,
    ``select``, computed indices and so on).
    """
    segments: List = []

    def walk(node) -> bool:
        match node:
            case Identity():
                return True
            case FieldAccess(name=name, target=target):
                if not walk(target):
                    return False
                segments.append(Field(name))
                return True
            case IndexAccess(index=Literal(value=value), target=target):
                if not walk(target):
                    return False
                if isinstance(value, str):
                    segments.append(Field(value))
                elif isinstance(value, int) and not isinstance(value, bool):
                    segments.append(Index(value))
                else:
                    return False
                return True
            case SliceAccess(start=start, end=end, target=target):
                bounds = []
                for b in (start, end):
                    if b is None:
                        bounds.append(None)
                    elif isinstance(b, Literal) and isinstance(b.value, int) and not isinstance(b.value, bool):
                        bounds.append(b.value)
                    else:
                        return False
                if not walk(target):
                    return False
                segments.append(Slice(*bounds))
                return True
            case Pipe(lhs=lhs, rhs=rhs):
                return walk(lhs) and walk(rhs)
        return False

    return Path(segments) if walk(expr) else None


class DocqTransformer:
    """
    Builds an :class:`Expression` from one parsed query.

    ``functions`` maps builtin names to ``(min_arity, max_arity)``. An
    instance holds the ``$name`` scopes of a single query and is not reused.
    """

    def __init__(self, query: str, functions: Dict[str, Tuple[int, int]]):
        self.functions = functions
        self.scopes: List[str] = []
        self._line_starts = [0] + [i + 1 for i, ch in enumerate(query) if ch == '\n']

    # --- raw node helpers ---

    def offset(self, node: Dict) -> Optional[int]:
        """The 0-based query offset of a raw node (koine reports 1-based line/col)."""
        line, col = node.get('line'), node.get('col')
        if line is None or col is None or not 1 <= line <= len(self._line_starts):
            return None
        return self._line_starts[line - 1] + col - 1

    def _attach_loc(self, obj: Expression, node: Dict) -> Expression:
        obj.loc = self.offset(node)
        return obj

    def _items(self, node: Dict) -> List[Dict]:
        out: List[Dict] = []
        self._collect(node.get('children'), out)
        return out

    def _collect(self, raw: Any, out: List[Dict]):
        if isinstance(raw, list):
            for item in raw:
                self._collect(item, out)
        elif isinstance(raw, dict):
            if raw.get('tag') in NODE_TAGS:
                out.append(raw)
            elif 'children' in raw:
                self._collect(raw['children'], out)
            elif 'tag' not in raw:
                # Named-children dict
                for value in raw.values():
                    self._collect(value, out)

    def _field(self, name: str, node: Dict) -> Expression:
        return self._attach_loc(FieldAccess(name, self._attach_loc(Identity(), node)), node)

    # --- entry point ---

    def transform(self, node: Dict) -> Expression:
        tag = node.get('tag')
        items = self._items(node)
        match tag:
            case 'query':
                if not items:
                    empty = Identity()
                    empty.loc = 0
                    return empty
                return self.transform(items[0])
            case 'pipe':
                return self._pipe(node, items)
            case 'assignment':
                return self._assignment(node, items)
            case 'alternative':
                lhs = self.transform(items[0])
                if len(items) == 1:
                    return lhs
                return self._attach_loc(Alternative(lhs, self.transform(items[1])), node)
            case 'binary':
                return self._binary(node, items)
            case 'comparison':
                if len(items) > 3:
                    extra = items[3]
                    raise ParseError(f"comparison operators do not chain, found {extra['text']!r}", self.offset(extra))
                return self._binary(node, items)
            case 'not':
                return self._attach_loc(Not(self.transform(items[0])), node)
            case 'negate':
                operand = self.transform(items[0])
                if isinstance(operand, Literal) and isinstance(operand.value, (int, float)) \
                        and not isinstance(operand.value, bool):
                    return self._attach_loc(Literal(-operand.value), node)
                return self._attach_loc(Negate(operand), node)
            case 'postfix':
                return self._postfix(items)
            case 'paren':
                return self.transform(items[0])

            # Atomics
            case 'number':
                return self._attach_loc(Literal(self._number(node)), node)
            case 'string':
                return self._attach_loc(Literal(self._string(node)), node)
            case 'constant':
                return self._attach_loc(Literal(_CONSTANTS[node['text']]), node)
            case 'variable':
                return self._variable(node)
            case 'word':
                return self._word(node)
            case 'bare_text':
                return self._attach_loc(Literal(node['text'], bare=True), node)

            # Path starts
            case 'identity':
                return self._attach_loc(Identity(), node)
            case 'recurse':
                return self._attach_loc(RecursiveDescent(), node)
            case 'recurse_field':
                # `..name`: every existing `name` field, anywhere.
                lookup = self._field(node['text'][2:], node)
                return self._attach_loc(Pipe(self._attach_loc(RecursiveDescent(), node),
                                             self._attach_loc(OptionalOp(lookup), node)), node)
            case 'dot_star':
                return self._attach_loc(Wildcard(self._attach_loc(Identity(), node)), node)
            case 'field':
                return self._field(node['text'][1:], node)
            case 'quoted_field':
                return self._field(self._string(items[0]), node)

            # Constructors and control flow
            case 'array':
                return self._attach_loc(ArrayConstruction([self.transform(i) for i in items]), node)
            case 'object':
                return self._attach_loc(ObjectConstruction([self._entry(e) for e in items]), node)
            case 'if':
                return self._conditional(node, items)
            case 'try':
                body = self.transform(items[0])
                handler = self.transform(self._items(items[1])[0]) if len(items) > 1 else None
                return self._attach_loc(TryCatch(body, handler), node)
            case 'call':
                return self._call(node, items)

            case _:
                raise ParseError(f"unexpected {node.get('text')!r}", self.offset(node))

    # --- operators ---

    def _pipe(self, node: Dict, items: List[Dict]) -> Expression:
        lhs = self.transform(items[0])
        if len(items) == 1:
            return lhs
        tail = items[1]
        rest = self._items(tail)
        if tail['tag'] == 'binding':
            var_node, body_node = rest
            name = var_node['text'][1:]
            self.scopes.append(name)
            try:
                body = self.transform(body_node)
            finally:
                self.scopes.pop()
            return self._attach_loc(Binding(lhs, name, body), node)
        return self._attach_loc(Pipe(lhs, self.transform(rest[0])), node)

    def _assignment(self, node: Dict, items: List[Dict]) -> Expression:
        lhs = self.transform(items[0])
        if len(items) == 1:
            return lhs
        if len(items) > 3:
            extra = items[3]
            raise ParseError(f"assignment operators do not chain, found {extra['text']!r}", self.offset(extra))
        op, value = items[1]['text'], items[2]
        if isinstance(lhs, Literal) and lhs.bare:
            # `name = 1` assigns to the field `name`.
            lhs = self._field(lhs.value, items[0])
        elif isinstance(lhs, FunctionCall) and lhs.bare:
            # So do `type = 1` and `first = 1`, whatever builtins share the name.
            lhs = self._field(lhs.name, items[0])
        rhs = self.transform(value)
        return self._attach_loc(Assignment(op, path_from_expression(lhs), rhs, lhs), node)

    def _binary(self, node: Dict, items: List[Dict]) -> Expression:
        lhs = self.transform(items[0])
        for i in range(1, len(items) - 1, 2):
            lhs = self._attach_loc(BinaryOp(items[i]['text'], lhs, self.transform(items[i + 1])), node)
        return lhs

    # --- postfix chains ---

    def _postfix(self, items: List[Dict]) -> Expression:
        head, suffixes = items[0], items[1:]
        if head['tag'] == 'word' and suffixes and suffixes[0]['tag'] in _ACCESSOR_TAGS \
                and self._adjacent(head, suffixes[0]):
            # `users[0].name` / `config.port`: a bare identifier followed by an
            # accessor names a field of the input, never a compound key.
            base = self._field(head['text'], head)
        else:
            base = self.transform(head)
        for sfx in suffixes:
            base = self._suffix(base, sfx)
        return base

    def _adjacent(self, node: Dict, nxt: Dict) -> bool:
        start, after = self.offset(node), self.offset(nxt)
        return start is not None and after == start + len(node['text'])

    def _suffix(self, base: Expression, sfx: Dict) -> Expression:
        match sfx['tag']:
            case 'field':
                return self._attach_loc(FieldAccess(sfx['text'][1:], base), sfx)
            case 'quoted_field':
                return self._attach_loc(FieldAccess(self._string(self._items(sfx)[0]), base), sfx)
            case 'dot_star':
                return self._attach_loc(Wildcard(base), sfx)
            case 'question':
                return self._attach_loc(OptionalOp(base), sfx)
            case 'bracket':
                return self._bracket(base, sfx)
        raise ParseError(f"unexpected {sfx.get('text')!r}", self.offset(sfx))

    def _bracket(self, base: Expression, sfx: Dict) -> Expression:
        parts = self._items(sfx)
        if not parts or parts[0]['tag'] == 'star':
            return self._attach_loc(Wildcard(base), sfx)
        inner = parts[0]
        if inner['tag'] == 'slice':
            start = end = None
            for bound in self._items(inner):
                expr = self.transform(self._items(bound)[0])
                if bound['tag'] == 'slice_from':
                    start = expr
                else:
                    end = expr
            return self._attach_loc(SliceAccess(start, end, base), sfx)
        return self._attach_loc(IndexAccess(self.transform(inner), base), sfx)

    # --- words, calls and variables ---

    def _word(self, node: Dict) -> Expression:
        word = node['text']
        if word in KEYWORDS and word != 'not':
            raise ParseError(f"unexpected keyword '{word}'", self.offset(node))
        sig = self.functions.get(word)
        if sig is not None and sig[0] == 0:
            return self._attach_loc(FunctionCall(word, [], bare=True), node)
        return self._attach_loc(Literal(word, bare=True), node)

    def _call(self, node: Dict, items: List[Dict]) -> Expression:
        name_node = items[0]
        name = name_node['text']
        args = [self.transform(a) for a in items[1:]]
        if name not in self.functions:
            raise ParseError(f"unknown function '{name}/{len(args)}'", self.offset(name_node))
        lo, hi = self.functions[name]
        if not lo <= len(args) <= hi:
            expected = str(lo) if lo == hi else f"{lo} to {hi}"
            raise ParseError(f"function '{name}' takes {expected} argument(s), got {len(args)}",
                             self.offset(name_node))
        return self._attach_loc(FunctionCall(name, args), node)

    def _variable(self, node: Dict) -> Expression:
        name = node['text'][1:]
        if name not in self.scopes:
            raise ParseError(f"${name} is not defined", self.offset(node))
        return self._attach_loc(Variable(name), node)

    # --- constructors ---

    def _entry(self, entry: Dict) -> Tuple[Expression, Expression]:
        parts = self._items(entry)
        key_node = parts[0]
        shorthand = None
        match key_node['tag']:
            case 'key_name':
                key = self._attach_loc(Literal(key_node['text']), key_node)
                shorthand = self._field(key_node['text'], key_node)
            case 'string':
                text = self._string(key_node)
                key = self._attach_loc(Literal(text), key_node)
                shorthand = self._field(text, key_node)
            case 'number':
                key = self._attach_loc(Literal(str(self._number(key_node))), key_node)
            case 'variable':
                shorthand = self._variable(key_node)
                key = self._attach_loc(Literal(shorthand.name), key_node)
            case _:
                key = self.transform(key_node)
        if len(parts) > 1:
            return key, self.transform(parts[1])
        if shorthand is None:
            raise ParseError("expected ':' after object key", self.offset(key_node))
        return key, shorthand

    def _conditional(self, node: Dict, items: List[Dict]) -> Expression:
        cond, then = self.transform(items[0]), self.transform(items[1])
        elifs = []
        otherwise = None
        for clause in items[2:]:
            parts = self._items(clause)
            if clause['tag'] == 'elif':
                elifs.append((self.transform(parts[0]), self.transform(parts[1])))
            else:
                otherwise = self.transform(parts[0])
        return self._attach_loc(Conditional(cond, then, elifs, otherwise), node)

    # --- literal text ---

    @staticmethod
    def _number(node: Dict):
        txt = node['text']
        # Integers stay exact Python ints.
        if '.' not in txt and 'e' not in txt and 'E' not in txt:
            return int(txt)
        return float(txt)

    def _string(self, node: Dict) -> str:
        try:
            return json.loads(node['text'], strict=False)
        except ValueError as e:
            start = self.offset(node)
            pos = start + getattr(e, 'pos', 0) if start is not None else None
            raise ParseError(f"invalid escape in string literal ({getattr(e, 'msg', e)})", pos) from None
