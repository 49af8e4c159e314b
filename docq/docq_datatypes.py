
"""
Defines the expression tree and path types for the docq query language.

The parser produces a tree of :class:`Expression` nodes. The set of node
classes is closed; the evaluator dispatches on them with ``match``. Each
node owns its children and carries ``loc``, the 0-based offset of the
token that started it in the query text.
"""

from abc import ABC
from typing import List, Any, Optional, Tuple, Iterator

from docq.docq_values import values_equal, type_name

# =================================================================
# Expression base
# =================================================================

class Expression(ABC):
    """Base class for all AST nodes."""
    _fields: Tuple[str, ...] = ()
    loc: Optional[int] = None

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return all(getattr(self, f) == getattr(other, f) for f in self._fields)

    __hash__ = None

    def __repr__(self) -> str:
        parts = ', '.join(f"{f}={getattr(self, f)!r}" for f in self._fields)
        return f"{type(self).__name__}({parts})"

    def children(self) -> Iterator['Expression']:
        """Yields the direct child expressions of this node."""
        for f in self._fields:
            v = getattr(self, f)
            if isinstance(v, Expression):
                yield v
            elif isinstance(v, list):
                for item in v:
                    if isinstance(item, Expression):
                        yield item
                    elif isinstance(item, tuple):
                        yield from (x for x in item if isinstance(x, Expression))


# =================================================================
# Leaves
# =================================================================

class Identity(Expression):
    """``.``"""


class RecursiveDescent(Expression):
    """``..``: the input plus everything reachable below it, pre-order."""


class Literal(Expression):
    """A constant. ``bare`` marks an unquoted word read as a string."""
    _fields = ('value',)

    def __init__(self, value: Any, bare: bool = False):
        self.value = value
        self.bare = bare

    def __eq__(self, other):
        if not isinstance(other, Literal):
            return NotImplemented
        return type_name(self.value) == type_name(other.value) and values_equal(self.value, other.value)


class Variable(Expression):
    """``$name``"""
    _fields = ('name',)

    def __init__(self, name: str):
        self.name = name


# =================================================================
# Accessors (postfix chain)
# =================================================================

class FieldAccess(Expression):
    """``target.name``; ``target`` is :class:`Identity` for a leading ``.name``."""
    _fields = ('name', 'target')

    def __init__(self, name: str, target: Expression):
        self.name = name
        self.target = target


class IndexAccess(Expression):
    """``target[index]``"""
    _fields = ('index', 'target')

    def __init__(self, index: Expression, target: Expression):
        self.index = index
        self.target = target


class SliceAccess(Expression):
    """``target[start:end]``; either bound may be None."""
    _fields = ('start', 'end', 'target')

    def __init__(self, start: Optional[Expression], end: Optional[Expression], target: Expression):
        self.start = start
        self.end = end
        self.target = target


class Wildcard(Expression):
    """``target[]``, ``target[*]`` or ``target.*``: one result per element."""
    _fields = ('target',)

    def __init__(self, target: Expression):
        self.target = target


ACCESSORS = (FieldAccess, IndexAccess, SliceAccess, Wildcard)


# =================================================================
# Operators
# =================================================================

class Pipe(Expression):
    """``lhs | rhs``: rhs runs once per lhs result, outputs are flattened."""
    _fields = ('lhs', 'rhs')

    def __init__(self, lhs: Expression, rhs: Expression):
        self.lhs = lhs
        self.rhs = rhs


class BinaryOp(Expression):
    """Arithmetic, comparison and logical operators."""
    _fields = ('op', 'lhs', 'rhs')

    def __init__(self, op: str, lhs: Expression, rhs: Expression):
        self.op = op
        self.lhs = lhs
        self.rhs = rhs


class Not(Expression):
    _fields = ('operand',)

    def __init__(self, operand: Expression):
        self.operand = operand


class Negate(Expression):
    _fields = ('operand',)

    def __init__(self, operand: Expression):
        self.operand = operand


class Alternative(Expression):
    """``lhs // rhs``"""
    _fields = ('lhs', 'rhs')

    def __init__(self, lhs: Expression, rhs: Expression):
        self.lhs = lhs
        self.rhs = rhs


class OptionalOp(Expression):
    """``inner?``: errors (and, for accessor chains, absent paths) yield nothing."""
    _fields = ('inner',)

    def __init__(self, inner: Expression):
        self.inner = inner


class TryCatch(Expression):
    """``try body catch handler``; ``handler`` is None when there is no catch."""
    _fields = ('body', 'handler')

    def __init__(self, body: Expression, handler: Optional[Expression] = None):
        self.body = body
        self.handler = handler


class Conditional(Expression):
    """``if cond then a elif c2 then b ... else z end``"""
    _fields = ('cond', 'then', 'elifs', 'otherwise')

    def __init__(self, cond: Expression, then: Expression,
                 elifs: List[Tuple[Expression, Expression]], otherwise: Optional[Expression]):
        self.cond = cond
        self.then = then
        self.elifs = list(elifs)
        self.otherwise = otherwise


class FunctionCall(Expression):
    """
    A builtin call. Arguments stay unevaluated; the builtin decides.
    ``bare`` marks a zero-argument call written as a plain word.
    """
    _fields = ('name', 'args')

    def __init__(self, name: str, args: List[Expression], bare: bool = False):
        self.name = name
        self.args = list(args)
        self.bare = bare


class ObjectConstruction(Expression):
    """``{k: v, ...}`` as an ordered list of (key expression, value expression)."""
    _fields = ('entries',)

    def __init__(self, entries: List[Tuple[Expression, Expression]]):
        self.entries = list(entries)


class ArrayConstruction(Expression):
    """``[a, b, ...]``: collects every output of every item."""
    _fields = ('items',)

    def __init__(self, items: List[Expression]):
        self.items = list(items)


class Binding(Expression):
    """``source as $name | body``"""
    _fields = ('source', 'name', 'body')

    def __init__(self, source: Expression, name: str, body: Expression):
        self.source = source
        self.name = name
        self.body = body


class Assignment(Expression):
    """``target op value``. ``path`` is the resolved write-mode :class:`Path`."""
    _fields = ('op', 'path', 'value')

    def __init__(self, op: str, path: 'Path', value: Expression, target: Expression):
        self.op = op
        self.path = path
        self.value = value
        self.target = target


# =================================================================
# Write-mode path and segment types
# =================================================================

class PathSegment(ABC):
    """Abstract base class for one step of a write-mode Path."""
    pass


class Field(PathSegment):
    """An object field, e.g. ``profile`` in ``.users[0].profile``."""
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"Field<{self.name!r}>"

    def __eq__(self, other):
        return isinstance(other, Field) and self.name == other.name

    def __hash__(self):
        return hash(('field', self.name))


class Index(PathSegment):
    """An array index; negative counts from the end."""
    def __init__(self, index: int):
        self.index = index

    def __repr__(self) -> str:
        return f"Index({self.index})"

    def __eq__(self, other):
        return isinstance(other, Index) and self.index == other.index

    def __hash__(self):
        return hash(('index', self.index))


class Slice(PathSegment):
    """An array slice ``[start:end]``; None means open."""
    def __init__(self, start: Optional[int], end: Optional[int]):
        self.start = start
        self.end = end

    def __repr__(self) -> str:
        return f"Slice(start={self.start!r}, end={self.end!r})"

    def __eq__(self, other):
        return isinstance(other, Slice) and self.start == other.start and self.end == other.end

    def __hash__(self):
        return hash(('slice', self.start, self.end))


class Path:
    """An ordered list of segments; empty means the root itself."""
    def __init__(self, segments: List[PathSegment]):
        self.segments = list(segments)

    def __getitem__(self, key):
        return self.segments[key]

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    def __repr__(self) -> str:
        return f"<Path segments={self.segments!r}>"

    def __eq__(self, other):
        if not isinstance(other, Path):
            return NotImplemented
        return self.segments == other.segments

    def __hash__(self):
        return hash(tuple(self.segments))
