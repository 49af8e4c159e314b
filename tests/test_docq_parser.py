import pytest

from docq.docq_errors import ParseError
from docq.docq_parser import Parser, check_brackets
from docq.docq_transformer import path_from_expression
from docq.docq_datatypes import (
    Identity, RecursiveDescent, Literal, Variable,
    FieldAccess, IndexAccess, SliceAccess, Wildcard,
    Pipe, BinaryOp, Not, Negate, Alternative, OptionalOp, TryCatch,
    Conditional, FunctionCall, ObjectConstruction, ArrayConstruction,
    Binding, Assignment, Path, Field, Index, Slice,
)


def parse(query: str):
    return Parser().parse(query)


def dot(*names):
    node = Identity()
    for n in names:
        node = FieldAccess(n, node)
    return node


# --- grammar and literals ---

def test_grammar_is_loaded_once():
    assert Parser.grammar() is Parser.grammar()


def test_numbers():
    assert [parse(q).value for q in ('10', '1.5', '1e3', '2E-1')] == [10, 1.5, 1000.0, 0.2]
    assert isinstance(parse('10').value, int)
    assert isinstance(parse('123456789012345678901234567890').value, int)


def test_string_escapes():
    assert parse(r'"a\n\"b\" é 😀"') == Literal('a\n"b" é 😀')
    assert parse(r'"😀"') == Literal('😀')


def test_comments_are_whitespace():
    assert parse('.a # trailing comment') == dot('a')
    assert parse('.a # first\n| .b') == Pipe(dot('a'), dot('b'))


def test_longest_operator_wins():
    assert parse('.a //= 1').op == '//='
    assert parse('.a |= 1').op == '|='
    assert parse('.a // 1') == Alternative(dot('a'), Literal(1))
    assert parse('1 / 2') == BinaryOp('/', Literal(1), Literal(2))


def test_keywords_need_a_word_boundary():
    assert parse('endpoint') == Literal('endpoint')
    assert parse('.a | nothing') == Pipe(dot('a'), Literal('nothing'))
    assert parse('.a and .b') == BinaryOp('and', dot('a'), dot('b'))


@pytest.mark.parametrize("query, message, position", [
    ('"abc', "unterminated string", 0),
    (r'"\q"', "invalid escape", 1),
    ('.a[0', "unbalanced '['", 2),
    ('.a)', "unbalanced ')'", 2),
    ('(.a]', "unbalanced ']'", 3),
    ('{"}": (1}', "unbalanced '}'", 8),
])
def test_scanned_errors(query, message, position):
    with pytest.raises(ParseError) as exc:
        parse(query)
    assert message in str(exc.value)
    assert exc.value.position == position


def test_check_brackets_ignores_strings_and_comments():
    check_brackets('"(" # )\n', 64)
    check_brackets('[{()}]', 64)
    with pytest.raises(ParseError, match="nested deeper than 2"):
        check_brackets('[[.]]', 2)


# --- accessors ---

def test_empty_query_is_identity():
    assert parse('') == Identity()
    assert parse('   ') == Identity()


def test_accessor_chain():
    expected = Wildcard(FieldAccess('c', IndexAccess(Literal(0), dot('a', 'b'))))
    assert parse('.a.b[0].c[]') == expected


def test_quoted_and_bracketed_fields():
    assert parse('."a b"') == dot('a b')
    assert parse('.["key"]') == IndexAccess(Literal('key'), Identity())
    assert parse('.a.[0]') == IndexAccess(Literal(0), dot('a'))


def test_slices():
    assert parse('.[1:3]') == SliceAccess(Literal(1), Literal(3), Identity())
    assert parse('.[:2]') == SliceAccess(None, Literal(2), Identity())
    assert parse('.[1:]') == SliceAccess(Literal(1), None, Identity())
    assert parse('.[-2:]') == SliceAccess(Literal(-2), None, Identity())


def test_wildcard_spellings():
    for q in ('.[]', '.[*]', '.*'):
        assert parse(q) == Wildcard(Identity()), q


def test_recursive_descent():
    assert parse('..') == RecursiveDescent()
    assert parse('..name') == Pipe(RecursiveDescent(), OptionalOp(dot('name')))


def test_optional_suffix():
    assert parse('.a?') == OptionalOp(dot('a'))
    assert parse('.a[]?') == OptionalOp(Wildcard(dot('a')))


def test_bare_identifier_followed_by_accessor_is_a_field():
    assert parse('users[0].name') == FieldAccess('name', IndexAccess(Literal(0), dot('users')))
    assert parse('config.port') == dot('config', 'port')


def test_bare_word_is_a_string():
    node = parse('foo')
    assert node == Literal('foo')
    assert node.bare


# --- operators and precedence ---

def test_pipe_is_right_associative():
    assert parse('.a | .b | .c') == Pipe(dot('a'), Pipe(dot('b'), dot('c')))


def test_arithmetic_precedence():
    assert parse('1 + 2 * 3') == BinaryOp('+', Literal(1), BinaryOp('*', Literal(2), Literal(3)))
    assert parse('(1 + 2) * 3') == BinaryOp('*', BinaryOp('+', Literal(1), Literal(2)), Literal(3))
    assert parse('1 - 2 - 3') == BinaryOp('-', BinaryOp('-', Literal(1), Literal(2)), Literal(3))


def test_logical_precedence():
    cmp_a = BinaryOp('==', dot('a'), Literal(1))
    cmp_b = BinaryOp('==', dot('b'), Literal(2))
    expected = BinaryOp('or', BinaryOp('and', cmp_a, cmp_b), dot('c'))
    assert parse('.a == 1 and .b == 2 or .c') == expected


def test_comparisons_do_not_chain():
    with pytest.raises(ParseError, match="do not chain"):
        parse('1 == 2 == 3')


def test_alternative_is_right_associative_and_binds_loosely():
    assert parse('.a // .b // 1') == Alternative(dot('a'), Alternative(dot('b'), Literal(1)))
    assert parse('.a or .b // 1') == Alternative(BinaryOp('or', dot('a'), dot('b')), Literal(1))


def test_not_prefix_and_postfix():
    assert parse('not .a') == Not(dot('a'))
    assert parse('not true') == Not(Literal(True))
    assert parse('.a | not') == Pipe(dot('a'), FunctionCall('not', []))
    assert parse('map(not)') == FunctionCall('map', [FunctionCall('not', [])])


def test_unary_minus():
    assert parse('-1') == Literal(-1)
    assert parse('-.a') == Negate(dot('a'))
    assert parse('.[-1]') == IndexAccess(Literal(-1), Identity())


# --- calls ---

def test_zero_arity_builtin_without_parens():
    assert parse('length') == FunctionCall('length', [])
    assert parse('.a | keys') == Pipe(dot('a'), FunctionCall('keys', []))


def test_call_arguments_accept_both_separators():
    expected = FunctionCall('test', [Literal('a'), Literal('i')])
    assert parse('test("a"; "i")') == expected
    assert parse('test("a", "i")') == expected


def test_call_argument_is_a_full_pipeline():
    assert parse('map(.a | .b)') == FunctionCall('map', [Pipe(dot('a'), dot('b'))])


def test_unknown_function():
    with pytest.raises(ParseError, match="unknown function 'nope/1'"):
        parse('nope(1)')


@pytest.mark.parametrize("query", ['map()', 'length(1)', 'range(1; 2; 3)'])
def test_wrong_arity(query):
    with pytest.raises(ParseError, match="argument"):
        parse(query)


def test_custom_function_table():
    assert Parser({'f': (1, 1)}).parse('f(1)') == FunctionCall('f', [Literal(1)])
    assert Parser({}).parse('length') == Literal('length')


# --- constructors ---

def test_object_construction():
    node = parse('{a: 1, "b c": .x, (.k): 2, name, 3: null}')
    assert node == ObjectConstruction([
        (Literal('a'), Literal(1)),
        (Literal('b c'), dot('x')),
        (dot('k'), Literal(2)),
        (Literal('name'), dot('name')),
        (Literal('3'), Literal(None)),
    ])


def test_object_keys_may_be_keywords():
    assert parse('{if: 1}') == ObjectConstruction([(Literal('if'), Literal(1))])


def test_object_variable_shorthand():
    node = parse('. as $v | {$v}')
    assert node.body == ObjectConstruction([(Literal('v'), Variable('v'))])


def test_array_construction():
    assert parse('[]') == ArrayConstruction([])
    assert parse('[.a, .b | .c]') == ArrayConstruction([dot('a'), Pipe(dot('b'), dot('c'))])


# --- control flow and bindings ---

def test_conditional():
    node = parse('if . then 1 elif .a then 2 else 3 end')
    assert node == Conditional(Identity(), Literal(1), [(dot('a'), Literal(2))], Literal(3))
    assert parse('if . then 1 end').otherwise is None


def test_try_catch():
    assert parse('try .a catch "x"') == TryCatch(dot('a'), Literal('x'))
    assert parse('try .a') == TryCatch(dot('a'), None)


def test_binding_scopes_variables():
    assert parse('. as $x | $x') == Binding(Identity(), 'x', Variable('x'))
    with pytest.raises(ParseError, match=r"\$x is not defined"):
        parse('$x')
    with pytest.raises(ParseError, match=r"\$x is not defined"):
        parse('(. as $x | $x) | $x')


# --- assignments ---

def test_assignment_resolves_a_static_path():
    node = parse('users[0].profile.email = "x"')
    assert isinstance(node, Assignment)
    assert node.op == '='
    assert node.path == Path([Field('users'), Index(0), Field('profile'), Field('email')])
    assert node.value == Literal('x')


def test_bare_word_assignment_target_is_a_field():
    assert parse('name = 1').path == Path([Field('name')])


def test_builtin_named_assignment_target_is_a_field():
    assert parse('type = "admin"').path == Path([Field('type')])
    assert parse('first = "b"').path == Path([Field('first')])
    assert parse('values[0] = 9').path == Path([Field('values'), Index(0)])
    assert parse('keys.x') == dot('keys', 'x')


def test_several_bare_words_on_the_right():
    node = parse('.name = John Smith')
    assert node.value == Literal('John Smith')
    assert node.value.bare
    assert parse('.a = foo').value == Literal('foo')


def test_assignment_operators():
    for op in ('=', '|=', '+=', '-=', '*=', '/=', '%=', '//='):
        assert parse(f'.a {op} 1').op == op


def test_assignment_value_includes_alternative():
    assert parse('.a = .b // 1').value == Alternative(dot('b'), Literal(1))


def test_dynamic_target_has_no_static_path():
    assert parse('.a[] = 1').path is None
    assert parse('(.[] | select(.id == 2)).name = "b"').path is None


def test_assignments_do_not_chain():
    with pytest.raises(ParseError, match="do not chain"):
        parse('.a = 1 = 2')


def test_parse_assignment_requires_an_assignment():
    assert isinstance(Parser().parse_assignment('.a = 1'), Assignment)
    with pytest.raises(ParseError, match="expected an assignment"):
        Parser().parse_assignment('.a')


def test_path_from_expression():
    assert path_from_expression(parse('.a["b"][1][2:4]')) == \
        Path([Field('a'), Field('b'), Index(1), Slice(2, 4)])
    assert path_from_expression(parse('.a | .b')) == Path([Field('a'), Field('b')])
    assert path_from_expression(Identity()) == Path([])
    assert path_from_expression(parse('.[.i]')) is None


# --- errors ---

@pytest.mark.parametrize("query, message, position", [
    ('{(.a)}', "expected ':' after object key", 1),
    ('.a | if', "unexpected keyword 'if'", 5),
    ('1 == 2 == 3', "comparison operators do not chain, found '=='", 7),
    ('.a = 1 = 2', "assignment operators do not chain, found '='", 7),
    ('nope(1)', "unknown function 'nope/1'", 0),
])
def test_checked_errors_report_positions(query, message, position):
    with pytest.raises(ParseError) as exc:
        parse(query)
    assert message in exc.value.message
    assert exc.value.position == position
    assert exc.value.message.endswith(f"at position {position}")


@pytest.mark.parametrize("query", [
    '.a |', '| .a', '@', '$ ', '.a | then', 'if . then 1', '{(.a) 1}', '.a .. .b[',
])
def test_malformed_queries(query):
    with pytest.raises(ParseError):
        parse(query)


def test_nesting_limit():
    query = '(' * 100 + '.' + ')' * 100
    with pytest.raises(ParseError, match="nested"):
        parse(query)
    assert Parser(max_depth=10).parse('(((.)))') == Identity()


def test_node_locations():
    node = parse('.a | .b')
    assert node.loc == 0
    assert node.rhs.loc == 5
    assert parse('.a.b').loc == 2
