"""
The docq interpreter, containing the Evaluator and PathResolver.

Evaluation is lazy: every node evaluates to a generator of result values,
and a pipe is a flat-map over the left side's results. The PathResolver
handles everything that works on locations instead of values: write-mode
assignment, read-mode assignment on a copy, and the paths used by ``del``.
"""
import os
import sys
import math
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from docq.docq_values import (
    is_number, is_integer, is_truthy, compare, values_equal,
    deep_copy, describe, sort_key,
)
from docq.docq_errors import (
    QueryError, QueryTypeError, PathNotFound, IndexOutOfRange, DivisionByZero,
)
from docq.docq_datatypes import (
    Expression, Identity, RecursiveDescent, Literal, Variable,
    FieldAccess, IndexAccess, SliceAccess, Wildcard, ACCESSORS,
    Pipe, BinaryOp, Not, Negate, Alternative, OptionalOp, TryCatch,
    Conditional, FunctionCall, ObjectConstruction, ArrayConstruction,
    Binding, Assignment, Path, PathSegment, Field, Index, Slice,
)

Env = Dict[str, Any]


class _Absent(QueryError):
    """A missing location inside an optional accessor chain (``.a.b?``)."""
    kind = 'Absent'


# =================================================================
# Operators
# =================================================================

def _merge_objects(a: dict, b: dict) -> dict:
    out = dict(a)
    for k, v in b.items():
        if isinstance(out.get(k), dict) and isinstance(v, dict):
            out[k] = _merge_objects(out[k], v)
        else:
            out[k] = v
    return out


def _operand_error(op_name: str, a: Any, b: Any) -> QueryTypeError:
    return QueryTypeError('compatible operands', f"{describe(a)} and {describe(b)}", op_name)


def apply_binary(op: str, a: Any, b: Any) -> Any:
    """Applies an arithmetic or comparison operator to two values."""
    match op:
        case '+':
            if a is None:
                return b
            if b is None:
                return a
            if is_number(a) and is_number(b):
                return a + b
            if isinstance(a, str) and isinstance(b, str):
                return a + b
            if isinstance(a, list) and isinstance(b, list):
                return a + b
            if isinstance(a, dict) and isinstance(b, dict):
                return {**a, **b}
            raise _operand_error('addition', a, b)
        case '-':
            if is_number(a) and is_number(b):
                return a - b
            if isinstance(a, list) and isinstance(b, list):
                return [x for x in a if not any(values_equal(x, y) for y in b)]
            raise _operand_error('subtraction', a, b)
        case '*':
            if is_number(a) and is_number(b):
                return a * b
            if isinstance(a, dict) and isinstance(b, dict):
                return _merge_objects(a, b)
            if isinstance(a, str) and is_number(b) or is_number(a) and isinstance(b, str):
                s, n = (a, b) if isinstance(a, str) else (b, a)
                return s * int(n) if n > 0 else None
            raise _operand_error('multiplication', a, b)
        case '/':
            if is_number(a) and is_number(b):
                if b == 0:
                    raise DivisionByZero(f"{describe(a)} cannot be divided by zero")
                if is_integer(a) and is_integer(b) and a % b == 0:
                    return a // b
                return a / b
            if isinstance(a, str) and isinstance(b, str):
                return a.split(b) if b else list(a)
            raise _operand_error('division', a, b)
        case '%':
            if is_number(a) and is_number(b):
                for n in (a, b):
                    if isinstance(n, float) and not math.isfinite(n):
                        raise QueryTypeError('finite numbers', describe(n), 'modulo')
                x, y = int(a), int(b)
                if y == 0:
                    raise DivisionByZero(f"{describe(a)} cannot be divided by zero (remainder)")
                r = abs(x) % abs(y)
                return -r if x < 0 else r
            raise _operand_error('modulo', a, b)
        case '==':
            return values_equal(a, b)
        case '!=':
            return not values_equal(a, b)
        case '<':
            return compare(a, b) < 0
        case '<=':
            return compare(a, b) <= 0
        case '>':
            return compare(a, b) > 0
        case '>=':
            return compare(a, b) >= 0
    raise QueryError(f"unknown operator {op!r}")


def _slice_bound(value: Any, context: str, upper: bool) -> Optional[int]:
    if value is None:
        return None
    if not is_number(value):
        raise QueryTypeError('number or null', describe(value), context)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return math.ceil(value) if upper else math.floor(value)
    return value


# =================================================================
# Path resolution
# =================================================================

class PathResolver:
    """Handles all path traversal, assignment and deletion logic."""
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    # --- enumerating paths ---

    def paths(self, expr: Expression, value: Any, env: Optional[Env] = None) -> Iterator[Tuple[List[PathSegment], Any]]:
        """
        Yields ``(segments, value_at_path)`` for every location ``expr``
        selects in ``value``. Only path expressions are accepted: accessors,
        pipes, ``..``, ``select``, ``if``, ``//``, ``?`` and bindings.
        """
        env = env or {}
        ev = self.evaluator
        match expr:
            case Identity():
                yield [], value
            case RecursiveDescent():
                stack = [([], value)]
                while stack:
                    segs, v = stack.pop()
                    yield segs, v
                    if isinstance(v, list):
                        stack.extend((segs + [Index(i)], x) for i, x in reversed(list(enumerate(v))))
                    elif isinstance(v, dict):
                        stack.extend((segs + [Field(k)], x) for k, x in reversed(list(v.items())))
            case FieldAccess(name=name, target=target):
                for segs, v in self.paths(target, value, env):
                    yield segs + [Field(name)], ev.get_field(v, name, expr)
            case IndexAccess(index=index, target=target):
                for segs, v in self.paths(target, value, env):
                    for i in ev.eval(index, value, env):
                        if isinstance(i, str):
                            yield segs + [Field(i)], ev.get_field(v, i, expr)
                            continue
                        found = ev.get_index(v, i, expr)
                        if isinstance(i, float):
                            if not math.isfinite(i):
                                raise QueryTypeError('finite number', describe(i), 'index', expr.loc)
                            i = math.floor(i)
                        if isinstance(v, list) and i < 0 and -i <= len(v):
                            i += len(v)
                        yield segs + [Index(i)], found
            case SliceAccess(start=start, end=end, target=target):
                for segs, v in self.paths(target, value, env):
                    for s in ([None] if start is None else ev.eval(start, value, env)):
                        for e in ([None] if end is None else ev.eval(end, value, env)):
                            lo = _slice_bound(s, 'slice start', False)
                            hi = _slice_bound(e, 'slice end', True)
                            yield segs + [Slice(lo, hi)], ev.get_slice(v, lo, hi, expr)
            case Wildcard(target=target):
                for segs, v in self.paths(target, value, env):
                    if isinstance(v, list):
                        for i, x in enumerate(v):
                            yield segs + [Index(i)], x
                    elif isinstance(v, dict):
                        for k, x in v.items():
                            yield segs + [Field(k)], x
                    else:
                        raise QueryTypeError('array or object', describe(v), 'iteration')
            case Pipe(lhs=lhs, rhs=rhs):
                for segs, v in self.paths(lhs, value, env):
                    for more, w in self.paths(rhs, v, env):
                        yield segs + more, w
            case OptionalOp(inner=inner):
                try:
                    yield from self.paths(inner, value, env)
                except QueryError as e:
                    if not e.catchable:
                        raise
            case Alternative(lhs=lhs, rhs=rhs):
                found = False
                try:
                    for segs, v in self.paths(lhs, value, env):
                        if is_truthy(v):
                            found = True
                            yield segs, v
                except QueryError as e:
                    if not e.catchable:
                        raise
                if not found:
                    yield from self.paths(rhs, value, env)
            case Conditional(cond=cond, then=then, elifs=elifs, otherwise=otherwise):
                yield from self._conditional_paths([(cond, then)] + elifs, otherwise, value, env)
            case Binding(source=source, name=name, body=body):
                for x in ev.eval(source, value, env):
                    yield from self.paths(body, value, {**env, name: x})
            case FunctionCall(name='select', args=[pred]):
                for keep in ev.eval(pred, value, env):
                    if is_truthy(keep):
                        yield [], value
            case FunctionCall(name='empty', args=[]):
                return
            case FunctionCall(name='recurse', args=[]):
                yield from self.paths(RecursiveDescent(), value, env)
            case FunctionCall(name='first', args=[]):
                yield [Index(0)], ev.get_index(value, 0, expr)
            case FunctionCall(name='last', args=[]):
                yield [Index(-1)], ev.get_index(value, -1, expr)
            case _:
                from docq.docq_printer import Printer
                raise QueryTypeError('a path expression', Printer().pformat(expr), 'path')

    def _conditional_paths(self, branches, otherwise, value, env):
        if not branches:
            if otherwise is None:
                yield [], value
            else:
                yield from self.paths(otherwise, value, env)
            return
        cond, then = branches[0]
        for c in self.evaluator.eval(cond, value, env):
            if is_truthy(c):
                yield from self.paths(then, value, env)
            else:
                yield from self._conditional_paths(branches[1:], otherwise, value, env)

    # --- reading and writing one location ---

    def get(self, root: Any, path: Path) -> Any:
        """Reads the value at ``path``; missing locations read as null."""
        cur = root
        for seg in path:
            match seg:
                case Field(name=name):
                    if isinstance(cur, dict):
                        cur = cur.get(name)
                    elif cur is None:
                        return None
                    else:
                        raise QueryTypeError('object', describe(cur), f"field '{name}'")
                case Index(index=i):
                    if isinstance(cur, list):
                        j = i + len(cur) if i < 0 else i
                        cur = cur[j] if 0 <= j < len(cur) else None
                    elif cur is None:
                        return None
                    else:
                        raise QueryTypeError('array', describe(cur), f"index [{i}]")
                case Slice(start=s, end=e):
                    if isinstance(cur, (list, str)):
                        cur = cur[s:e]
                    elif cur is None:
                        return None
                    else:
                        raise QueryTypeError('array or string', describe(cur), 'slice')
        return cur

    def _vivify(self, cur: Any, seg: PathSegment) -> Any:
        if cur is None:
            return [] if isinstance(seg, (Index, Slice)) else {}
        return cur

    def set(self, root: Any, path: Path, new_value: Any) -> Any:
        """
        Writes ``new_value`` at ``path`` in place and returns the root.

        Missing or null intermediates are created: an array when the next
        segment is an index or slice, an object otherwise. Index writes past
        the end append, padding with nulls.
        """
        if len(path) == 0:
            return new_value
        root = self._vivify(root, path[0])
        cur = root
        last = len(path) - 1
        for n, seg in enumerate(path):
            final = n == last
            match seg:
                case Field(name=name):
                    if not isinstance(cur, dict):
                        raise QueryTypeError('object', describe(cur), f"assignment to field '{name}'")
                    if final:
                        cur[name] = new_value
                        break
                    child = self._vivify(cur.get(name), path[n + 1])
                    cur[name] = child
                    cur = child
                case Index(index=i):
                    if not isinstance(cur, list):
                        raise QueryTypeError('array', describe(cur), f"assignment to index [{i}]")
                    j = i
                    if j < 0:
                        j += len(cur)
                        if j < 0:
                            raise IndexOutOfRange(i, len(cur))
                    if j >= len(cur):
                        cur.extend([None] * (j + 1 - len(cur)))
                    if final:
                        cur[j] = new_value
                        break
                    child = self._vivify(cur[j], path[n + 1])
                    cur[j] = child
                    cur = child
                case Slice(start=s, end=e):
                    if not final:
                        raise PathNotFound(seg, "cannot traverse through a slice")
                    if not isinstance(cur, list):
                        raise QueryTypeError('array', describe(cur), 'slice assignment')
                    if not isinstance(new_value, list):
                        raise QueryTypeError('array', describe(new_value), 'slice assignment value')
                    cur[s:e] = new_value
        return root

    # --- assignment ---

    def _target_paths(self, node: Assignment, root: Any, env: Env) -> List[Path]:
        if node.path is not None:
            return [node.path]
        return [Path(segs) for segs, _ in self.paths(node.target, root, env)]

    def assign(self, node: Assignment, root: Any, env: Optional[Env] = None) -> Any:
        """Performs ``node`` on ``root`` in place and returns the (possibly new) root."""
        env = env or {}
        ev = self.evaluator
        paths = self._target_paths(node, root, env)
        ev._dbg("assign", node.op, paths)

        if node.op == '|=':
            for path in paths:
                current = self.get(root, path)
                for new in ev.eval(node.value, current, env):
                    root = self.set(root, path, new)
                    break
            return root

        rhs_values = ev.eval(node.value, root, env)
        try:
            rhs = next(rhs_values)
        except StopIteration:
            return root
        for path in paths:
            if node.op == '=':
                new = deep_copy(rhs)
            elif node.op == '//=':
                current = self.get(root, path)
                new = current if is_truthy(current) else deep_copy(rhs)
            else:
                new = apply_binary(node.op[:-1], self.get(root, path), rhs)
            root = self.set(root, path, new)
        return root

    def assign_copy(self, node: Assignment, value: Any, env: Env) -> Iterator[Any]:
        """Read-mode assignment: yields a modified copy, leaving ``value`` untouched."""
        yield self.assign(node, deep_copy(value), env)

    # --- deletion ---

    def delete(self, value: Any, expr: Expression, env: Optional[Env] = None) -> Any:
        """Returns a copy of ``value`` with every location selected by ``expr`` removed."""
        paths = [segs for segs, _ in self.paths(expr, value, env)]
        if any(len(p) == 0 for p in paths):
            return None
        out = deep_copy(value)
        # Deleting later siblings first keeps earlier indices valid.
        paths.sort(key=lambda p: sort_key([segment_value(s) for s in p]), reverse=True)
        for segs in paths:
            parent = self.get(out, Path(segs[:-1]))
            last = segs[-1]
            match last:
                case Field(name=name):
                    if isinstance(parent, dict):
                        parent.pop(name, None)
                    elif parent is not None:
                        raise QueryTypeError('object', describe(parent), f"deleting field '{name}'")
                case Index(index=i):
                    if isinstance(parent, list):
                        j = i + len(parent) if i < 0 else i
                        if 0 <= j < len(parent):
                            del parent[j]
                    elif parent is not None:
                        raise QueryTypeError('array', describe(parent), f"deleting index [{i}]")
                case Slice(start=s, end=e):
                    if isinstance(parent, list):
                        del parent[s:e]
                    elif parent is not None:
                        raise QueryTypeError('array', describe(parent), 'deleting a slice')
        return out


def segment_value(seg: PathSegment) -> Any:
    """The plain value a segment is reported as: a key, an index or a slice object."""
    match seg:
        case Field(name=name):
            return name
        case Index(index=i):
            return i
        case Slice(start=s, end=e):
            return {'start': s, 'end': e}


class Closure:
    """A builtin argument: an expression bound to the caller's variables."""
    def __init__(self, evaluator: 'Evaluator', expr: Expression, env: Env):
        self.evaluator = evaluator
        self.expr = expr
        self.env = env

    def __call__(self, value: Any) -> Iterator[Any]:
        return self.evaluator._eval(self.expr, value, self.env, False)

    def values(self, value: Any) -> List[Any]:
        return list(self(value))

    def __repr__(self) -> str:
        return f"<Closure {self.expr!r}>"


# =================================================================
# Evaluator
# =================================================================

class Evaluator:
    """The docq execution engine. One instance serves one query call."""
    def __init__(self, functions: Optional[Dict[str, Callable]] = None, debug: Optional[bool] = None):
        self.path_resolver = PathResolver(self)
        self.side_effects: List[Dict] = []
        self.debug = bool(os.environ.get("DOCQ_DEBUG")) if debug is None else debug
        if functions is None:
            from docq.docq_runtime import StdLib
            functions = StdLib(self).functions()
        self.functions = functions

    def _dbg(self, *parts):
        if self.debug:
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def eval(self, node: Expression, value: Any, env: Optional[Env] = None) -> Iterator[Any]:
        """Public entry point: a lazy, single-pass iterator of results."""
        return self._eval(node, value, env or {}, False)

    def closure(self, node: Expression, env: Env) -> 'Closure':
        return Closure(self, node, env)

    # --- accessors ---

    def get_field(self, value: Any, name: str, node: Optional[Expression] = None, strict: bool = False) -> Any:
        if isinstance(value, dict):
            if name in value:
                return value[name]
            if strict:
                raise _Absent(f"no field '{name}'")
            return None
        if value is None:
            if strict:
                raise _Absent(f"no field '{name}' on null")
            return None
        raise QueryTypeError('object', describe(value), f"field access '.{name}'", getattr(node, 'loc', None))

    def get_index(self, value: Any, index: Any, node: Optional[Expression] = None, strict: bool = False) -> Any:
        loc = getattr(node, 'loc', None)
        if isinstance(index, str):
            return self.get_field(value, index, node, strict)
        if not is_number(index):
            raise QueryTypeError('number or string', describe(index), 'index', loc)
        if isinstance(value, list):
            if isinstance(index, float):
                if not math.isfinite(index):
                    return None
                index = math.floor(index)
            i = index + len(value) if index < 0 else index
            if 0 <= i < len(value):
                return value[i]
            if strict:
                raise _Absent(f"index {index} out of range")
            return None
        if value is None:
            if strict:
                raise _Absent(f"index {index} on null")
            return None
        raise QueryTypeError('array', describe(value), f"index [{index}]", loc)

    def get_slice(self, value: Any, start: Optional[int], end: Optional[int], node: Optional[Expression] = None) -> Any:
        if isinstance(value, (list, str)):
            return value[start:end]
        if value is None:
            return None
        raise QueryTypeError('array or string', describe(value), 'slice', getattr(node, 'loc', None))

    # --- dispatch ---

    def _eval(self, node: Expression, inp: Any, env: Env, strict: bool) -> Iterator[Any]:
        """Recursive dispatcher for evaluating any AST node."""
        try:
            match node:
                case Identity():
                    yield inp

                case Literal(value=value):
                    yield value

                case Variable(name=name):
                    yield env[name]

                case RecursiveDescent():
                    stack = [inp]
                    while stack:
                        v = stack.pop()
                        yield v
                        if isinstance(v, list):
                            stack.extend(reversed(v))
                        elif isinstance(v, dict):
                            stack.extend(reversed(list(v.values())))

                case FieldAccess(name=name, target=target):
                    for t in self._eval(target, inp, env, strict):
                        yield self.get_field(t, name, node, strict)

                case IndexAccess(index=index, target=target):
                    for t in self._eval(target, inp, env, strict):
                        for i in self._eval(index, inp, env, False):
                            yield self.get_index(t, i, node, strict)

                case SliceAccess(start=start, end=end, target=target):
                    for t in self._eval(target, inp, env, strict):
                        for s in ([None] if start is None else self._eval(start, inp, env, False)):
                            for e in ([None] if end is None else self._eval(end, inp, env, False)):
                                lo = _slice_bound(s, 'slice start', False)
                                hi = _slice_bound(e, 'slice end', True)
                                yield self.get_slice(t, lo, hi, node)

                case Wildcard(target=target):
                    for t in self._eval(target, inp, env, strict):
                        if isinstance(t, list):
                            yield from t
                        elif isinstance(t, dict):
                            yield from t.values()
                        else:
                            raise QueryTypeError('array or object', describe(t), 'iteration', node.loc)

                case Pipe(lhs=lhs, rhs=rhs):
                    for v in self._eval(lhs, inp, env, False):
                        yield from self._eval(rhs, v, env, False)

                case BinaryOp(op='and' | 'or' as op, lhs=lhs, rhs=rhs):
                    for left in self._eval(lhs, inp, env, False):
                        if op == 'and' and not is_truthy(left):
                            yield False
                        elif op == 'or' and is_truthy(left):
                            yield True
                        else:
                            for right in self._eval(rhs, inp, env, False):
                                yield is_truthy(right)

                case BinaryOp(op=op, lhs=lhs, rhs=rhs):
                    for left in self._eval(lhs, inp, env, False):
                        for right in self._eval(rhs, inp, env, False):
                            yield apply_binary(op, left, right)

                case Not(operand=operand):
                    for v in self._eval(operand, inp, env, False):
                        yield not is_truthy(v)

                case Negate(operand=operand):
                    for v in self._eval(operand, inp, env, False):
                        if not is_number(v):
                            raise QueryTypeError('number', describe(v), 'negation', node.loc)
                        yield -v

                case FunctionCall():
                    yield from self._call(node, inp, env)

                case Conditional(cond=cond, then=then, elifs=elifs, otherwise=otherwise):
                    yield from self._eval_branches([(cond, then)] + elifs, otherwise, inp, env)

                case TryCatch(body=body, handler=handler):
                    try:
                        for v in self._eval(body, inp, env, False):
                            yield v
                    except QueryError as e:
                        if not e.catchable:
                            raise
                        self._dbg("caught", e.describe())
                        if handler is not None:
                            yield from self._eval(handler, inp, env, False)

                case OptionalOp(inner=inner):
                    chain = isinstance(inner, ACCESSORS + (OptionalOp,))
                    try:
                        for v in self._eval(inner, inp, env, chain):
                            yield v
                    except QueryError as e:
                        if not e.catchable:
                            raise

                case Alternative(lhs=lhs, rhs=rhs):
                    found = False
                    try:
                        for v in self._eval(lhs, inp, env, False):
                            if is_truthy(v):
                                found = True
                                yield v
                    except QueryError as e:
                        if not e.catchable:
                            raise
                    if not found:
                        yield from self._eval(rhs, inp, env, False)

                case ObjectConstruction(entries=entries):
                    yield from self._build_object(entries, 0, {}, inp, env)

                case ArrayConstruction(items=items):
                    yield [v for item in items for v in self._eval(item, inp, env, False)]

                case Binding(source=source, name=name, body=body):
                    for x in self._eval(source, inp, env, False):
                        yield from self._eval(body, inp, {**env, name: x}, False)

                case Assignment():
                    yield from self.path_resolver.assign_copy(node, inp, env)

                case _:
                    raise QueryError(f"cannot evaluate {type(node).__name__}")
        except QueryError as e:
            if e.position is None:
                e.position = node.loc
            raise

    def _eval_branches(self, branches, otherwise, inp, env):
        if not branches:
            if otherwise is None:
                yield inp
            else:
                yield from self._eval(otherwise, inp, env, False)
            return
        cond, then = branches[0]
        for c in self._eval(cond, inp, env, False):
            if is_truthy(c):
                yield from self._eval(then, inp, env, False)
            else:
                yield from self._eval_branches(branches[1:], otherwise, inp, env)

    def _build_object(self, entries, n, acc, inp, env):
        if n == len(entries):
            yield dict(acc)
            return
        key_expr, value_expr = entries[n]
        for k in self._eval(key_expr, inp, env, False):
            if not isinstance(k, str):
                raise QueryTypeError('string', describe(k), 'object key', key_expr.loc)
            for v in self._eval(value_expr, inp, env, False):
                yield from self._build_object(entries, n + 1, {**acc, k: v}, inp, env)

    def _arg_product(self, args, inp, env, n=0, acc=()):
        if n == len(args):
            yield acc
            return
        for v in self._eval(args[n], inp, env, False):
            yield from self._arg_product(args, inp, env, n + 1, acc + (v,))

    def _call(self, node: FunctionCall, inp: Any, env: Env) -> Iterator[Any]:
        func = self.functions.get(node.name)
        if func is None:
            raise QueryError(f"unknown function '{node.name}'", node.loc)
        streams = getattr(func, 'docq_stream', False)
        if getattr(func, 'docq_exprs', False):
            result = func(inp, *[self.closure(a, env) for a in node.args])
            if streams:
                yield from result
            else:
                yield result
            return
        for args in self._arg_product(node.args, inp, env):
            result = func(inp, *args)
            if streams:
                yield from result
            else:
                yield result
