# docq_runtime.py

import os
import re
import json
import math
import inspect
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple
from dataclasses import dataclass, field

from docq.docq_values import (
    type_name, is_number, is_integer, is_truthy, compare, values_equal,
    sort_key, sorted_values, to_json, describe,
)
from docq.docq_errors import (
    QueryError, QueryTypeError, RegexError, CustomError, DepthLimitExceeded,
)
from docq.docq_datatypes import Expression
from docq.docq_parser import Parser
from docq.docq_interpreter import Evaluator, Closure, apply_binary

# ===================================================================
# 1. Builtin markers
# ===================================================================


def stream(func):
    """The builtin yields zero or more results instead of returning one."""
    func.docq_stream = True
    return func


def takes_exprs(func):
    """The builtin receives its arguments as closures instead of values."""
    func.docq_exprs = True
    return func


def _require(value, expected: str, context: str, *types):
    if isinstance(value, bool) and bool not in types:
        raise QueryTypeError(expected, describe(value), context)
    if not isinstance(value, types):
        raise QueryTypeError(expected, describe(value), context)
    return value


def _elements(value, context: str) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    raise QueryTypeError('array or object', describe(value), context)


def _contains(a, b) -> bool:
    if isinstance(a, dict) and isinstance(b, dict):
        return all(k in a and _contains(a[k], v) for k, v in b.items())
    if isinstance(a, list) and isinstance(b, list):
        return all(any(_contains(x, y) for x in a) for y in b)
    if isinstance(a, list):
        return any(type_name(x) == type_name(b) and _contains(x, b) for x in a)
    if isinstance(a, str) and isinstance(b, str):
        return b in a
    if type_name(a) == type_name(b):
        return values_equal(a, b)
    raise QueryTypeError(type_name(a), describe(b), f"contains on {type_name(a)}")


_MISSING = object()
_NUMERIC_TEXT = re.compile(r'\s*-?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*\Z')
_INTEGER_TEXT = re.compile(r'\s*-?\d+\s*\Z')
_NAMED_GROUP = re.compile(r'\(\?<(?![=!])')
_REGEX_FLAGS = {'i': re.IGNORECASE, 'x': re.VERBOSE, 's': re.DOTALL}


def _compile_regex(pattern, flags) -> Tuple['re.Pattern', bool, bool]:
    """Returns (compiled pattern, global, skip_empty)."""
    _require(pattern, 'string', 'regex', str)
    if flags is None:
        flags = ''
    _require(flags, 'string', 'regex flags', str)
    re_flags = 0
    for f in flags:
        if f in _REGEX_FLAGS:
            re_flags |= _REGEX_FLAGS[f]
        elif f not in ('g', 'n'):
            raise RegexError(f"{flags} is not a valid modifier string")
    try:
        compiled = re.compile(_NAMED_GROUP.sub('(?P<', pattern), re_flags)
    except re.error as e:
        raise RegexError(f"{pattern} (at offset {e.pos}) is not a valid regex: {e.msg}")
    return compiled, 'g' in flags, 'n' in flags


def _match_object(m: 're.Match') -> Dict[str, Any]:
    names = {idx: name for name, idx in m.re.groupindex.items()}
    captures = []
    for g in range(1, (m.re.groups or 0) + 1):
        text = m.group(g)
        captures.append({
            'offset': m.start(g) if text is not None else -1,
            'length': len(text) if text is not None else 0,
            'string': text,
            'name': names.get(g),
        })
    return {
        'offset': m.start(),
        'length': m.end() - m.start(),
        'string': m.group(0),
        'captures': captures,
    }


def _round_half_away(x):
    if is_integer(x) or not math.isfinite(x):
        return x
    r = math.floor(abs(x) + 0.5)
    return -r if x < 0 else r


# ===================================================================
# 2. Standard library
# ===================================================================


class StdLib:
    """
    Contains Python implementations for all docq builtins.

    Every ``_name`` method is the builtin ``name``. Methods receive the
    current input first, then their arguments: values by default (called once
    per combination of argument outputs), or :class:`Closure` objects when
    marked with :func:`takes_exprs`.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    @classmethod
    def _builtin_members(cls):
        for name, member in inspect.getmembers(cls, inspect.isfunction):
            if name.startswith('_') and not name.startswith('__'):
                yield name[1:], member

    @classmethod
    def signatures(cls) -> Dict[str, Tuple[int, int]]:
        """Maps each builtin name to its (min, max) arity."""
        table = {}
        for name, func in cls._builtin_members():
            params = list(inspect.signature(func).parameters.values())[2:]
            required = sum(1 for p in params if p.default is inspect.Parameter.empty)
            table[name] = (required, len(params))
        return table

    def functions(self) -> Dict[str, Any]:
        """Maps each builtin name to its bound implementation."""
        return {name: getattr(self, f"_{name}") for name, _ in self._builtin_members()}

    # --- Introspection and control ---
    def _length(self, inp):
        if inp is None:
            return 0
        if isinstance(inp, (str, list, dict)):
            return len(inp)
        raise QueryTypeError('string, array, object or null', describe(inp), 'length')

    def _type(self, inp): return type_name(inp)
    def _not(self, inp): return not is_truthy(inp)

    @stream
    def _empty(self, inp):
        return iter(())

    def _error(self, inp, message=_MISSING):
        raise CustomError(inp if message is _MISSING else message)

    def _debug(self, inp):
        message = to_json(["DEBUG:", inp])
        self.evaluator.side_effects.append({'topics': ['stderr'], 'message': message})
        self.evaluator._dbg(message)
        return inp

    # --- Type filters ---
    @stream
    def _objects(self, inp): return iter([inp] if isinstance(inp, dict) else [])
    @stream
    def _arrays(self, inp): return iter([inp] if isinstance(inp, list) else [])
    @stream
    def _strings(self, inp): return iter([inp] if isinstance(inp, str) else [])
    @stream
    def _numbers(self, inp): return iter([inp] if is_number(inp) else [])
    @stream
    def _booleans(self, inp): return iter([inp] if isinstance(inp, bool) else [])
    @stream
    def _nulls(self, inp): return iter([inp] if inp is None else [])
    @stream
    def _iterables(self, inp): return iter([inp] if isinstance(inp, (list, dict)) else [])
    @stream
    def _scalars(self, inp): return iter([] if isinstance(inp, (list, dict)) else [inp])

    # --- Arrays ---
    @takes_exprs
    def _map(self, inp, f: Closure):
        return [v for x in _elements(inp, 'map') for v in f(x)]

    @stream
    @takes_exprs
    def _select(self, inp, f: Closure):
        for keep in f(inp):
            if is_truthy(keep):
                yield inp

    def _sort(self, inp):
        return sorted_values(_require(inp, 'array', 'sort', list))

    @takes_exprs
    def _sort_by(self, inp, f: Closure):
        items = _require(inp, 'array', 'sort_by', list)
        return sorted(items, key=lambda x: sort_key(f.values(x)))

    @takes_exprs
    def _group_by(self, inp, f: Closure):
        items = _require(inp, 'array', 'group_by', list)
        groups: List[Tuple[Any, List[Any]]] = []
        for x in items:
            key = f.values(x)
            for gkey, members in groups:
                if values_equal(gkey, key):
                    members.append(x)
                    break
            else:
                groups.append((key, [x]))
        return [members for _, members in groups]

    def _unique(self, inp):
        items = _require(inp, 'array', 'unique', list)
        out: List[Any] = []
        for x in items:
            if not any(values_equal(x, y) for y in out):
                out.append(x)
        return out

    @takes_exprs
    def _unique_by(self, inp, f: Closure):
        items = _require(inp, 'array', 'unique_by', list)
        seen: List[Any] = []
        out = []
        for x in items:
            key = f.values(x)
            if not any(values_equal(key, k) for k in seen):
                seen.append(key)
                out.append(x)
        return out

    def _reverse(self, inp):
        if inp is None:
            return []
        if isinstance(inp, str):
            return inp[::-1]
        return list(reversed(_require(inp, 'array, string or null', 'reverse', list)))

    def _add(self, inp):
        if inp is None:
            return None
        total = None
        for x in _elements(inp, 'add'):
            total = apply_binary('+', total, x)
        return total

    def _min(self, inp):
        items = _require(inp, 'array', 'min', list)
        return min(items, key=sort_key) if items else None

    def _max(self, inp):
        items = _require(inp, 'array', 'max', list)
        return max(items, key=sort_key) if items else None

    @takes_exprs
    def _min_by(self, inp, f: Closure):
        items = _require(inp, 'array', 'min_by', list)
        return min(items, key=lambda x: sort_key(f.values(x))) if items else None

    @takes_exprs
    def _max_by(self, inp, f: Closure):
        items = _require(inp, 'array', 'max_by', list)
        best = None
        best_key = None
        for x in items:
            key = f.values(x)
            if best_key is None or compare(key, best_key) >= 0:
                best, best_key = x, key
        return best

    def _flatten(self, inp, depth=1):
        items = _require(inp, 'array', 'flatten', list)
        _require(depth, 'number', 'flatten depth', int, float)
        if depth < 0:
            raise QueryTypeError('non-negative depth', describe(depth), 'flatten')

        def flat(xs, d):
            out = []
            for x in xs:
                if isinstance(x, list) and d > 0:
                    out.extend(flat(x, d - 1))
                else:
                    out.append(x)
            return out
        return flat(items, depth)

    def _indices(self, inp, target):
        if inp is None:
            return None
        if isinstance(inp, str):
            _require(target, 'string', 'indices on a string', str)
            if not target:
                return None
            return [i for i in range(len(inp)) if inp.startswith(target, i)]
        items = _require(inp, 'array, string or null', 'indices', list)
        if isinstance(target, list):
            if not target:
                return None
            n = len(target)
            return [i for i in range(len(items) - n + 1)
                    if all(values_equal(items[i + j], target[j]) for j in range(n))]
        return [i for i, x in enumerate(items) if values_equal(x, target)]

    def _index(self, inp, target):
        found = self._indices(inp, target)
        return found[0] if found else None

    def _rindex(self, inp, target):
        found = self._indices(inp, target)
        return found[-1] if found else None

    @stream
    @takes_exprs
    def _first(self, inp, f: Optional[Closure] = None):
        if f is None:
            yield self.evaluator.get_index(inp, 0)
            return
        for v in f(inp):
            yield v
            return

    @stream
    @takes_exprs
    def _last(self, inp, f: Optional[Closure] = None):
        if f is None:
            yield self.evaluator.get_index(inp, -1)
            return
        found = False
        out = None
        for out in f(inp):
            found = True
        if found:
            yield out

    @takes_exprs
    def _any(self, inp, f: Optional[Closure] = None):
        items = _elements(inp, 'any')
        if f is None:
            return any(is_truthy(x) for x in items)
        return any(is_truthy(v) for x in items for v in f(x))

    @takes_exprs
    def _all(self, inp, f: Optional[Closure] = None):
        items = _elements(inp, 'all')
        if f is None:
            return all(is_truthy(x) for x in items)
        return all(is_truthy(v) for x in items for v in f(x))

    @stream
    def _range(self, inp, start, stop=None):
        if stop is None:
            start, stop = 0, start
        _require(start, 'number', 'range', int, float)
        _require(stop, 'number', 'range', int, float)
        n = start
        while n < stop:
            yield n
            n += 1

    # --- Objects ---
    def _keys(self, inp):
        if isinstance(inp, dict):
            return sorted(inp.keys())
        if isinstance(inp, list):
            return list(range(len(inp)))
        raise QueryTypeError('object or array', describe(inp), 'keys')

    def _keys_unsorted(self, inp):
        if isinstance(inp, dict):
            return list(inp.keys())
        return self._keys(inp)

    def _values(self, inp):
        if isinstance(inp, dict):
            return list(inp.values())
        if isinstance(inp, list):
            return list(inp)
        raise QueryTypeError('object or array', describe(inp), 'values')

    def _has(self, inp, key):
        if isinstance(inp, dict):
            return key in inp if isinstance(key, str) else False
        if isinstance(inp, list) and is_number(key):
            return 0 <= key < len(inp)
        raise QueryTypeError('object or array', f"{describe(inp)} with key {describe(key)}", 'has')

    @takes_exprs
    def _del(self, inp, f: Closure):
        return self.evaluator.path_resolver.delete(inp, f.expr, f.env)

    def _to_entries(self, inp):
        obj = _require(inp, 'object', 'to_entries', dict)
        return [{'key': k, 'value': v} for k, v in obj.items()]

    def _from_entries(self, inp):
        out = {}
        for entry in _require(inp, 'array', 'from_entries', list):
            _require(entry, 'object', 'from_entries entry', dict)
            key = None
            for name in ('key', 'k', 'name', 'Name', 'Key', 'K'):
                if is_truthy(entry.get(name)):
                    key = entry[name]
                    break
            if not isinstance(key, str):
                key = to_json(key)
            value = None
            for name in ('value', 'v', 'Value', 'V'):
                if name in entry:
                    value = entry[name]
                    break
            out[key] = value
        return out

    @takes_exprs
    def _with_entries(self, inp, f: Closure):
        entries = self._to_entries(inp)
        return self._from_entries([v for e in entries for v in f(e)])

    @takes_exprs
    def _map_values(self, inp, f: Closure):
        if isinstance(inp, dict):
            out = {}
            for k, v in inp.items():
                for new in f(v):
                    out[k] = new
                    break
            return out
        items = _require(inp, 'object or array', 'map_values', list)
        out_list = []
        for v in items:
            for new in f(v):
                out_list.append(new)
                break
        return out_list

    @stream
    def _paths(self, inp):
        for path, _ in _walk(inp):
            if path:
                yield path

    @stream
    def _leaf_paths(self, inp):
        for path, v in _walk(inp):
            if path and not isinstance(v, (list, dict)):
                yield path

    @stream
    @takes_exprs
    def _recurse(self, inp, f: Optional[Closure] = None):
        if f is None:
            for _, v in _walk(inp):
                yield v
            return
        stack = [inp]
        while stack:
            v = stack.pop()
            yield v
            stack.extend(reversed(list(f(v))))

    # --- Strings ---
    def _split(self, inp, sep):
        _require(inp, 'string', 'split', str)
        _require(sep, 'string', 'split separator', str)
        if inp == '':
            return []
        return list(inp) if sep == '' else inp.split(sep)

    def _join(self, inp, sep):
        items = _require(inp, 'array', 'join', list)
        _require(sep, 'string', 'join separator', str)
        parts = []
        for x in items:
            if x is None:
                parts.append('')
            elif isinstance(x, str):
                parts.append(x)
            elif isinstance(x, (bool, int, float)):
                parts.append(to_json(x))
            else:
                raise QueryTypeError('string, number, boolean or null', describe(x), 'join')
        return sep.join(parts)

    def _trim(self, inp): return inp.strip() if isinstance(inp, str) else inp
    def _ltrim(self, inp): return inp.lstrip() if isinstance(inp, str) else inp
    def _rtrim(self, inp): return inp.rstrip() if isinstance(inp, str) else inp

    def _ltrimstr(self, inp, prefix):
        if isinstance(inp, str) and isinstance(prefix, str) and inp.startswith(prefix):
            return inp[len(prefix):]
        return inp

    def _rtrimstr(self, inp, suffix):
        if isinstance(inp, str) and isinstance(suffix, str) and suffix and inp.endswith(suffix):
            return inp[:-len(suffix)]
        return inp

    def _contains(self, inp, needle):
        return _contains(inp, needle)

    def _startswith(self, inp, prefix):
        _require(inp, 'string', 'startswith', str)
        return inp.startswith(_require(prefix, 'string', 'startswith argument', str))

    def _endswith(self, inp, suffix):
        _require(inp, 'string', 'endswith', str)
        return inp.endswith(_require(suffix, 'string', 'endswith argument', str))

    def _test(self, inp, pattern, flags=None):
        _require(inp, 'string', 'test', str)
        compiled, _, _ = _compile_regex(pattern, flags)
        return compiled.search(inp) is not None

    @stream
    def _match(self, inp, pattern, flags=None):
        _require(inp, 'string', 'match', str)
        compiled, global_, skip_empty = _compile_regex(pattern, flags)
        for m in compiled.finditer(inp):
            if skip_empty and m.end() == m.start():
                continue
            yield _match_object(m)
            if not global_:
                break

    def _ascii_upcase(self, inp):
        return _require(inp, 'string', 'ascii_upcase', str).translate(_UPPER)

    def _ascii_downcase(self, inp):
        return _require(inp, 'string', 'ascii_downcase', str).translate(_LOWER)

    def _tostring(self, inp):
        return inp if isinstance(inp, str) else to_json(inp)

    def _tonumber(self, inp):
        if is_number(inp):
            return inp
        if isinstance(inp, str) and _NUMERIC_TEXT.match(inp):
            return int(inp) if _INTEGER_TEXT.match(inp) else float(inp)
        raise QueryTypeError('number or numeric string', describe(inp), 'tonumber')

    def _tojson(self, inp): return to_json(inp)

    def _fromjson(self, inp):
        text = _require(inp, 'string', 'fromjson', str)
        try:
            return json.loads(text)
        except ValueError as e:
            raise QueryTypeError('JSON text', describe(inp), f"fromjson ({e.msg})")

    # --- Math ---
    def _floor(self, inp):
        n = _require(inp, 'number', 'floor', int, float)
        return math.floor(n) if math.isfinite(n) else n

    def _ceil(self, inp):
        n = _require(inp, 'number', 'ceil', int, float)
        return math.ceil(n) if math.isfinite(n) else n

    def _round(self, inp):
        return _round_half_away(_require(inp, 'number', 'round', int, float))

    def _abs(self, inp):
        return abs(_require(inp, 'number', 'abs', int, float))

    def _sqrt(self, inp):
        n = _require(inp, 'number', 'sqrt', int, float)
        return math.sqrt(n) if n >= 0 else math.nan


_UPPER = str.maketrans('abcdefghijklmnopqrstuvwxyz', 'ABCDEFGHIJKLMNOPQRSTUVWXYZ')
_LOWER = str.maketrans('ABCDEFGHIJKLMNOPQRSTUVWXYZ', 'abcdefghijklmnopqrstuvwxyz')


def _walk(value) -> Iterator[Tuple[List[Any], Any]]:
    """Pre-order (path, value) pairs, iteratively."""
    stack = [([], value)]
    while stack:
        path, v = stack.pop()
        yield path, v
        if isinstance(v, list):
            stack.extend((path + [i], x) for i, x in reversed(list(enumerate(v))))
        elif isinstance(v, dict):
            stack.extend((path + [k], x) for k, x in reversed(list(v.items())))


# ===================================================================
# 3. Configuration and results
# ===================================================================


@dataclass(frozen=True)
class EngineConfig:
    """Per-engine settings; ``from_env`` reads the DOCQ_* variables once."""
    max_depth: int = 64
    debug: bool = False

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        try:
            raw = os.environ.get("DOCQ_MAX_DEPTH")
            max_depth = int(raw) if raw is not None else cls.max_depth
        except ValueError:
            max_depth = cls.max_depth
        return cls(max_depth=max_depth, debug=bool(os.environ.get("DOCQ_DEBUG")))


@dataclass
class ExecutionResult:
    """The structured result of one query call."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[QueryError] = None
    error_message: Optional[str] = None
    query: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats the error, pointing at the query position when one is known."""
        if self.status != 'error':
            return ""
        msg = self.error_message or "Unknown error"
        pos = getattr(self.error, 'position', None)
        if pos is None or self.query is None:
            return msg
        return f"{msg}\n{_source_context(self.query, pos)}"


def _source_context(query: str, pos: int) -> str:
    lines = query.split('\n')
    offset = 0
    for n, line in enumerate(lines, start=1):
        if pos <= offset + len(line):
            col = pos - offset
            width = len(str(n))
            return f"> {n} | {line}\n  {' ' * width} | {' ' * col}^"
        offset += len(line) + 1
    return ""


# ===================================================================
# 4. Engine
# ===================================================================


class QueryEngine:
    """Parses and runs queries. Holds no per-call state."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()
        self.functions = StdLib.signatures()

    def _new_evaluator(self) -> Evaluator:
        return Evaluator(debug=self.config.debug)

    def parse(self, query: str) -> Expression:
        return Parser(self.functions, max_depth=self.config.max_depth).parse(query)

    def execute(self, value: Any, query: str) -> Iterator[Any]:
        """Read mode. Raises ParseError now; runtime errors surface while iterating."""
        ast = self.parse(query)
        ev = self._new_evaluator()
        ev._dbg("execute", repr(query), ast)
        return self._stream(ev, ast, value)

    def _stream(self, ev: Evaluator, ast: Expression, value: Any) -> Iterator[Any]:
        try:
            yield from ev.eval(ast, value)
        except RecursionError:
            raise DepthLimitExceeded("value or query nested too deeply to evaluate") from None

    def execute_write(self, value: Any, query: str) -> Any:
        """Write mode: applies the assignment in place and returns the root."""
        return self._write(self._new_evaluator(), value, query)

    def _write(self, ev: Evaluator, value: Any, query: str) -> Any:
        ast = Parser(self.functions, max_depth=self.config.max_depth).parse_assignment(query)
        ev._dbg("execute_write", repr(query), ast)
        try:
            return ev.path_resolver.assign(ast, value)
        except RecursionError:
            raise DepthLimitExceeded("value or query nested too deeply to evaluate") from None

    def run(self, value: Any, query: str, *, write: bool = False) -> ExecutionResult:
        """Runs a query to completion, capturing any QueryError in the result."""
        ev = self._new_evaluator()
        try:
            if write:
                result = self._write(ev, value, query)
            else:
                result = list(self._stream(ev, self.parse(query), value))
        except QueryError as e:
            msg = e.describe()
            ev.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                error=e,
                error_message=msg,
                query=query,
                side_effects=ev.side_effects,
            )
        return ExecutionResult(status='success', value=result, query=query, side_effects=ev.side_effects)


def execute(value: Any, query: str) -> Iterator[Any]:
    """Evaluates ``query`` against ``value`` and returns a lazy iterator of results."""
    return QueryEngine().execute(value, query)


def execute_write(value: Any, query: str) -> Any:
    """Applies the assignment ``query`` to ``value`` in place; returns the root."""
    return QueryEngine().execute_write(value, query)
