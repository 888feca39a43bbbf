"""
Safe evaluation of condition and router expressions.

Expressions are parsed with ``ast`` and checked against a whitelist before
being evaluated with no builtins. Reference tokens never reach the parser as
text: the resolver swaps each one for a placeholder name (``__ref_0``...) and
passes the resolved values as bindings, so block outputs cannot inject code.

The editor produces JavaScript-flavoured expressions, so ``&&``, ``||``,
``!``, ``===``, ``!==``, ``true``, ``false``, ``null`` and ``undefined`` are
accepted and translated before parsing.
"""

import ast
import re
from collections.abc import Iterable, Mapping
from typing import Any


class EvaluationError(RuntimeError):
    pass


SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
}

_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")

_JS_REWRITES = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
)


def translate_js(expression: str) -> str:
    """Rewrite JS operators and literals outside string literals."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        code = parts[i]
        for pattern, replacement in _JS_REWRITES:
            code = pattern.sub(replacement, code)
        parts[i] = code
    return "".join(parts)


class _ExpressionValidator(ast.NodeVisitor):
    ALLOWED_NODES = (
        ast.Expression,
        ast.BoolOp,
        ast.BinOp,
        ast.UnaryOp,
        ast.Compare,
        ast.IfExp,
        ast.Call,
        ast.Name,
        ast.Load,
        ast.Constant,
        ast.Subscript,
        ast.Slice,
        ast.List,
        ast.Tuple,
    )

    ALLOWED_BINOPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod)

    ALLOWED_UNARY = (ast.Not, ast.USub, ast.UAdd)

    ALLOWED_CMPS = (
        ast.Eq,
        ast.NotEq,
        ast.Lt,
        ast.Gt,
        ast.LtE,
        ast.GtE,
        ast.In,
        ast.NotIn,
        ast.Is,
        ast.IsNot,
    )

    def __init__(self, allowed_names: Iterable[str]) -> None:
        self.allowed_names = set(allowed_names)

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, (ast.cmpop, ast.operator, ast.boolop, ast.unaryop)):
            return
        if not isinstance(node, self.ALLOWED_NODES):
            raise EvaluationError(f"Disallowed expression node: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise EvaluationError("Only whitelisted helper functions can be used in conditions")
        if node.keywords:
            raise EvaluationError("Keyword arguments are not allowed in conditions")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in self.allowed_names and node.id not in SAFE_FUNCTIONS:
            raise EvaluationError(f"Unknown variable '{node.id}' in expression")

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if not isinstance(node.op, self.ALLOWED_BINOPS):
            raise EvaluationError(f"Operator '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, self.ALLOWED_UNARY):
            raise EvaluationError(f"Unary op '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_Compare(self, node: ast.Compare) -> None:
        for op in node.ops:
            if not isinstance(op, self.ALLOWED_CMPS):
                raise EvaluationError(f"Comparator '{type(op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if not isinstance(node.value, ast.Name) or node.value.id not in self.allowed_names:
            raise EvaluationError("Only placeholder variables can be subscripted")
        self.generic_visit(node)


def safe_eval(expression: str, bindings: Mapping[str, Any] | None = None) -> Any:
    """
    Evaluate an expression against placeholder bindings.

    Raises:
        EvaluationError: if the expression is empty, malformed, or uses
            anything outside the whitelist
    """
    bindings = dict(bindings or {})
    expr_str = translate_js(expression).strip()
    if not expr_str:
        raise EvaluationError("Expression resolved to empty string")

    try:
        tree = ast.parse(expr_str, mode="eval")
    except SyntaxError as e:
        raise EvaluationError(f"Invalid expression '{expression}': {e.msg}") from e

    _ExpressionValidator(bindings.keys()).visit(tree)
    compiled = compile(tree, "<condition>", "eval")

    safe_locals = dict(SAFE_FUNCTIONS)
    safe_locals.update(bindings)
    try:
        return eval(compiled, {"__builtins__": {}}, safe_locals)
    except Exception as e:
        raise EvaluationError(f"Failed to evaluate '{expression}': {e}") from e
