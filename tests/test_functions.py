import pytest

from docq.docq_runtime import QueryEngine


def run_query(value, query: str):
    return QueryEngine().run(value, query)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, kind: str | None = None, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if kind is not None:
        assert res.error.kind == kind, res.error_message
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


# --- length, type and type filters ---

@pytest.mark.parametrize("value, expected", [
    ([1, 2], 2),
    ({"a": 1}, 1),
    ("héllo", 5),
    (None, 0),
])
def test_length(value, expected):
    assert_ok(run_query(value, 'length'), [expected])


def test_length_rejects_scalars():
    assert_error(run_query(5, 'length'), 'TypeError')
    assert_error(run_query(True, 'length'), 'TypeError')


def test_type():
    res = run_query([None, True, 1, "a", [], {}], '[.[] | type]')
    assert_ok(res, [["null", "boolean", "number", "string", "array", "object"]])


@pytest.mark.parametrize("name, expected", [
    ('numbers', [1]),
    ('strings', ["a"]),
    ('nulls', [None]),
    ('booleans', [True]),
    ('arrays', [[1]]),
    ('objects', [{"a": 1}]),
    ('iterables', [[1], {"a": 1}]),
    ('scalars', [1, "a", None, True]),
])
def test_type_filters(name, expected):
    res = run_query([1, "a", None, [1], {"a": 1}, True], f'[.[] | {name}]')
    assert_ok(res, [expected])


# --- control ---

def test_empty():
    assert_ok(run_query([1, 2], '[.[] | empty]'), [[]])
    assert_ok(run_query(1, 'empty'), [])


def test_error():
    assert_error(run_query(None, 'error("boom")'), 'Custom', 'boom')
    assert_error(run_query({"a": 1}, 'error'), 'Custom', '{"a":1} (not a string)')


def test_not():
    assert_ok(run_query([True, None, 0], 'map(not)'), [[False, True, False]])


def test_debug_records_a_side_effect():
    res = run_query(1, 'debug')
    assert_ok(res, [1])
    assert {'topics': ['stderr'], 'message': '["DEBUG:",1]'} in res.side_effects


# --- arrays ---

def test_map_and_select():
    assert_ok(run_query([1, 2, 3], 'map(. * 10)'), [[10, 20, 30]])
    assert_ok(run_query([1, 2, 3], 'map(select(. > 1))'), [[2, 3]])
    assert_ok(run_query({"a": 1, "b": 2}, 'map(. + 1)'), [[2, 3]])
    people = [{"name": "a", "age": 20}, {"name": "b", "age": 40}]
    assert_ok(run_query(people, '.[] | select(.age > 30) | .name'), ["b"])


def test_map_values():
    assert_ok(run_query({"a": 1}, 'map_values(. + 1)'), [{"a": 2}])
    assert_ok(run_query({"a": 1}, 'map_values(empty)'), [{}])
    assert_ok(run_query([1, 2], 'map_values(. * 2)'), [[2, 4]])


def test_sort():
    assert_ok(run_query([3, 1, 2], 'sort'), [[1, 2, 3]])
    assert_ok(run_query([None, 1, "a", True], 'sort'), [[None, True, 1, "a"]])
    assert_error(run_query({}, 'sort'), 'TypeError')


def test_sort_by_is_stable():
    items = [{"n": 2, "i": 0}, {"n": 1, "i": 1}, {"n": 2, "i": 2}]
    assert_ok(run_query(items, 'sort_by(.n) | map(.i)'), [[1, 0, 2]])


def test_group_by_keeps_first_seen_order():
    items = [{"a": 2}, {"a": 1}, {"a": 2}]
    assert_ok(run_query(items, 'group_by(.a)'), [[[{"a": 2}, {"a": 2}], [{"a": 1}]]])


def test_unique():
    assert_ok(run_query([3, 1, 3, 2, 1], 'unique'), [[3, 1, 2]])
    assert_ok(run_query(["a", "bb", "c"], 'unique_by(length)'), [["a", "bb"]])


def test_reverse():
    assert_ok(run_query([1, 2, 3], 'reverse'), [[3, 2, 1]])
    assert_ok(run_query("abc", 'reverse'), ["cba"])
    assert_ok(run_query(None, 'reverse'), [[]])


@pytest.mark.parametrize("value, expected", [
    ([1, 2, 3], 6),
    (["a", "b"], "ab"),
    ([[1], [2]], [1, 2]),
    ([], None),
    ([{"a": 1}, {"b": 2}], {"a": 1, "b": 2}),
    ([1, None, 2], 3),
    ({"x": 1, "y": 2}, 3),
])
def test_add(value, expected):
    assert_ok(run_query(value, 'add'), [expected])


def test_min_max():
    assert_ok(run_query([3, 1, 2], 'min'), [1])
    assert_ok(run_query([3, 1, 2], 'max'), [3])
    assert_ok(run_query([], 'min'), [None])
    items = [{"n": 2}, {"n": 1}, {"n": 3}]
    assert_ok(run_query(items, 'min_by(.n)'), [{"n": 1}])
    assert_ok(run_query(items, 'max_by(.n)'), [{"n": 3}])


def test_flatten():
    assert_ok(run_query([1, [2, [3]]], 'flatten'), [[1, 2, [3]]])
    assert_ok(run_query([1, [2, [3]]], 'flatten(2)'), [[1, 2, 3]])
    assert_ok(run_query([1, [2, [3]]], 'flatten(0)'), [[1, [2, [3]]]])
    assert_error(run_query([1], 'flatten(-1)'), 'TypeError')


def test_indices_index_rindex():
    assert_ok(run_query("a, b, c", 'indices(", ")'), [[1, 4]])
    assert_ok(run_query([0, 1, 1], 'indices(1)'), [[1, 2]])
    assert_ok(run_query([0, 1, 2, 1, 2], 'indices([1, 2])'), [[1, 3]])
    assert_ok(run_query("abcb", 'index("b")'), [1])
    assert_ok(run_query("abcb", 'rindex("b")'), [3])
    assert_ok(run_query("abc", 'index("z")'), [None])


def test_first_and_last():
    assert_ok(run_query([1, 2, 3], 'first'), [1])
    assert_ok(run_query([1, 2, 3], 'last'), [3])
    assert_ok(run_query([], 'first'), [None])
    assert_ok(run_query([1, 2, 3], 'first(.[] | select(. > 1))'), [2])
    assert_ok(run_query([1, 2, 3], 'last(.[])'), [3])
    assert_ok(run_query(None, '[first(empty)]'), [[]])


def test_any_all():
    assert_ok(run_query([False, 1], 'any'), [True])
    assert_ok(run_query([False, 1], 'all'), [False])
    assert_ok(run_query([1, 2], 'any(. > 1)'), [True])
    assert_ok(run_query([1, 2], 'all(. > 1)'), [False])
    assert_ok(run_query([], 'all'), [True])
    assert_ok(run_query([], 'any'), [False])


def test_range():
    assert_ok(run_query(None, '[range(3)]'), [[0, 1, 2]])
    assert_ok(run_query(None, '[range(2; 5)]'), [[2, 3, 4]])
    assert_ok(run_query(None, '[range(2, 5)]'), [[2, 3, 4]])
    assert_ok(run_query(None, '[range(0)]'), [[]])


# --- objects ---

def test_keys_and_values():
    assert_ok(run_query({"b": 1, "a": 2}, 'keys'), [["a", "b"]])
    assert_ok(run_query({"b": 1, "a": 2}, 'keys_unsorted'), [["b", "a"]])
    assert_ok(run_query([5, 6], 'keys'), [[0, 1]])
    assert_ok(run_query({"a": 1, "b": 2}, 'values'), [[1, 2]])
    assert_ok(run_query([1, 2], 'values'), [[1, 2]])
    assert_error(run_query("x", 'keys'), 'TypeError')


def test_has():
    assert_ok(run_query({"a": None}, 'has("a")'), [True])
    assert_ok(run_query({"a": None}, 'has("b")'), [False])
    assert_ok(run_query([1, 2], 'has(1)'), [True])
    assert_ok(run_query([1, 2], 'has(5)'), [False])
    assert_error(run_query(5, 'has("a")'), 'TypeError')


def test_del():
    assert_ok(run_query({"a": 1, "b": 2}, 'del(.a)'), [{"b": 2}])
    assert_ok(run_query([1, 2, 3], 'del(.[0])'), [[2, 3]])
    assert_ok(run_query([1, 2, 3], 'del(.[] | select(. > 1))'), [[1]])
    assert_ok(run_query({"a": {"b": 1, "c": 2}}, 'del(.a.b)'), [{"a": {"c": 2}}])
    assert_ok(run_query({"a": 1}, 'del(.missing)'), [{"a": 1}])
    assert_ok(run_query([1, 2, 3], 'del(.[1:])'), [[1]])
    assert_ok(run_query({"a": 1}, 'del(.)'), [None])


def test_del_leaves_input_untouched():
    doc = {"a": 1, "b": 2}
    assert_ok(run_query(doc, 'del(.a)'), [{"b": 2}])
    assert doc == {"a": 1, "b": 2}


def test_entries():
    assert_ok(run_query({"a": 1}, 'to_entries'), [[{"key": "a", "value": 1}]])
    entries = [{"key": "a", "value": 1}, {"k": "b", "v": 2}, {"name": "c", "value": 3}, {"key": 1, "value": 4}]
    assert_ok(run_query(entries, 'from_entries'), [{"a": 1, "b": 2, "c": 3, "1": 4}])


def test_with_entries():
    doc = {"a": 1, "b": 2}
    assert_ok(run_query(doc, 'with_entries(.value += 1)'), [{"a": 2, "b": 3}])
    assert_ok(run_query(doc, 'with_entries(select(.value > 1))'), [{"b": 2}])
    assert_ok(run_query(doc, 'with_entries(.key |= ascii_upcase)'), [{"A": 1, "B": 2}])


def test_paths_and_leaf_paths():
    doc = {"a": {"b": 1}, "c": [2]}
    assert_ok(run_query(doc, '[paths]'), [[["a"], ["a", "b"], ["c"], ["c", 0]]])
    assert_ok(run_query(doc, '[leaf_paths]'), [[["a", "b"], ["c", 0]]])


def test_recurse():
    assert_ok(run_query({"a": [1]}, '[recurse]'), [[{"a": [1]}, [1], 1]])
    tree = {"v": 1, "children": [{"v": 2, "children": [{"v": 3}]}, {"v": 4}]}
    assert_ok(run_query(tree, '[recurse(.children[]?) | .v]'), [[1, 2, 3, 4]])


# --- strings ---

def test_split_and_join():
    assert_ok(run_query("a, b", 'split(", ")'), [["a", "b"]])
    assert_ok(run_query("abc", 'split("")'), [["a", "b", "c"]])
    assert_ok(run_query(["a", 1, None, True], 'join("-")'), ["a-1--true"])
    assert_error(run_query([[1]], 'join(",")'), 'TypeError')


def test_trimming():
    assert_ok(run_query("  x  ", 'trim'), ["x"])
    assert_ok(run_query("  x  ", 'ltrim'), ["x  "])
    assert_ok(run_query("  x  ", 'rtrim'), ["  x"])
    assert_ok(run_query("foobar", 'ltrimstr("foo")'), ["bar"])
    assert_ok(run_query("foobar", 'rtrimstr("bar")'), ["foo"])
    assert_ok(run_query("foobar", 'ltrimstr("x")'), ["foobar"])
    assert_ok(run_query(5, 'ltrimstr("foo")'), [5])


def test_contains():
    assert_ok(run_query("foobar", 'contains("bar")'), [True])
    assert_ok(run_query([1, 2, 3], 'contains([1, 3])'), [True])
    assert_ok(run_query([1, 2], 'contains(2)'), [True])
    assert_ok(run_query({"a": {"b": 1, "c": 2}}, 'contains({a: {b: 1}})'), [True])
    assert_ok(run_query({"a": 1}, 'contains({b: 1})'), [False])
    assert_error(run_query("a", 'contains(1)'), 'TypeError')


def test_startswith_endswith():
    assert_ok(run_query("foobar", 'startswith("fo")'), [True])
    assert_ok(run_query("foobar", 'endswith("bar")'), [True])
    assert_ok(run_query("foobar", 'endswith("x")'), [False])
    assert_error(run_query(1, 'startswith("a")'), 'TypeError')


def test_regex_test():
    assert_ok(run_query("abc", 'test("a.c")'), [True])
    assert_ok(run_query("abc", 'test("ABC"; "i")'), [True])
    assert_ok(run_query("abc", 'test("x")'), [False])
    assert_error(run_query("abc", 'test("(")'), 'RegexError')
    assert_error(run_query("abc", 'test("a"; "q")'), 'RegexError')


def test_regex_match_with_captures():
    res = run_query("2024-06", r'match("(?<y>\\d+)-(\\d+)")')
    assert_ok(res, [{
        "offset": 0,
        "length": 7,
        "string": "2024-06",
        "captures": [
            {"offset": 0, "length": 4, "string": "2024", "name": "y"},
            {"offset": 5, "length": 2, "string": "06", "name": None},
        ],
    }])


def test_regex_match_global_and_no_match():
    res = run_query("a1b22", r'[match("\\d+"; "g") | .string]')
    assert_ok(res, [["1", "22"]])
    assert_ok(run_query("abc", r'[match("\\d")]'), [[]])


def test_case_conversion_is_ascii_only():
    assert_ok(run_query("abc é", 'ascii_upcase'), ["ABC é"])
    assert_ok(run_query("ABC É", 'ascii_downcase'), ["abc É"])


def test_tostring_and_tonumber():
    assert_ok(run_query([1, "x", [1], {"a": 1}], 'map(tostring)'), [["1", "x", "[1]", '{"a":1}']])
    assert_ok(run_query(["42", "3.5", 7], 'map(tonumber)'), [[42, 3.5, 7]])
    assert_error(run_query("abc", 'tonumber'), 'TypeError')


def test_json_round_trip():
    assert_ok(run_query({"a": [1, 2]}, 'tojson'), ['{"a":[1,2]}'])
    assert_ok(run_query("[1,2]", 'fromjson'), [[1, 2]])
    assert_error(run_query("{", 'fromjson'), 'TypeError')


# --- math ---

@pytest.mark.parametrize("value, query, expected", [
    (3.7, 'floor', 3),
    (3.2, 'ceil', 4),
    (2.5, 'round', 3),
    (-2.5, 'round', -3),
    (2.4, 'round', 2),
    (-5, 'abs', 5),
    (16, 'sqrt', 4.0),
])
def test_math(value, query, expected):
    assert_ok(run_query(value, query), [expected])


def test_floor_returns_an_integer():
    res = run_query(3.7, 'floor')
    assert isinstance(res.value[0], int)


def test_math_rejects_non_numbers():
    assert_error(run_query("x", 'floor'), 'TypeError')
