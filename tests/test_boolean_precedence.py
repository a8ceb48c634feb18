from strategy_dsl import parse_with_diagnostics
from strategy_dsl.src.ast_nodes import BinaryOp, Identifier, UnaryOp


def expr(text):
    result = parse_with_diagnostics(f"indicator f(a: float, b: float, c: float) = {text};")
    assert result.errors == ()
    return result.ast.indicators[0].expr


def test_multiplication_binds_tighter():
    node = expr("a + b * c")
    assert node.op == "+" and isinstance(node.left, Identifier)
    assert isinstance(node.right, BinaryOp) and node.right.op == "*"


def test_power_is_right_associative():
    node = expr("a ** b ** c")
    assert node.left.name == "a"
    assert node.right.op == "**" and node.right.left.name == "b"


def test_unary_minus_wraps_power():
    node = expr("-a ** b")
    assert isinstance(node, UnaryOp) and node.operand.op == "**"


def test_boolean_precedence_basic():
    # not > and > or; parentheses override
    node = expr("!a && b || c")
    assert node.op == "or" and node.left.op == "and"
    node = expr("!(a && (b || c))")
    assert isinstance(node, UnaryOp) and node.operand.right.op == "or"


def test_generated_python_evaluates_the_same(run_dsl):
    namespace = run_dsl(
        """
        indicator sum_prod(a: float, b: float, c: float) = a + b * c;
        indicator tower(a: float, b: float, c: float) = a ** b ** c;
        indicator neg_pow(a: float, b: float) = -a ** b;
        indicator logic(a: boolean, b: boolean, c: boolean) = !a && b || c;
        """
    )
    assert namespace["sum_prod"](1, 2, 3) == 7
    assert namespace["tower"](2, 3, 2) == 512
    assert namespace["neg_pow"](2, 2) == -4
    assert namespace["logic"](False, True, False) is True
    assert namespace["logic"](True, True, False) is False
