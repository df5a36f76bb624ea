# zlang_ast.py
# Abstract syntax tree for zlang
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
AST node types produced by the zlang parser.

Expression nodes form a closed union (NumberExpr, VariableExpr, BinaryExpr,
CallExpr, IfExpr, ForExpr). Every node is an immutable dataclass that owns its
children; `node_type` is the tag the code generator dispatches on.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

ANON_EXPR_NAME = "__anon_expr"


# -------------------------
# Expressions
# -------------------------
@dataclass(frozen=True)
class NumberExpr:
    value: float
    node_type: ClassVar[str] = "Number"


@dataclass(frozen=True)
class VariableExpr:
    name: str
    node_type: ClassVar[str] = "Variable"


@dataclass(frozen=True)
class BinaryExpr:
    op: str
    lhs: "Expr"
    rhs: "Expr"
    node_type: ClassVar[str] = "Binary"


@dataclass(frozen=True)
class CallExpr:
    callee: str
    args: Tuple["Expr", ...] = ()
    node_type: ClassVar[str] = "Call"


@dataclass(frozen=True)
class IfExpr:
    cond: "Expr"
    then: "Expr"
    orelse: "Expr"
    node_type: ClassVar[str] = "If"


@dataclass(frozen=True)
class ForExpr:
    var_name: str
    start: "Expr"
    end: "Expr"
    step: Optional["Expr"]
    body: "Expr"
    node_type: ClassVar[str] = "For"


Expr = Union[NumberExpr, VariableExpr, BinaryExpr, CallExpr, IfExpr, ForExpr]


# -------------------------
# Top-level units
# -------------------------
@dataclass(frozen=True)
class Prototype:
    name: str
    params: Tuple[str, ...] = ()

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def is_anonymous(self) -> bool:
        return self.name == ANON_EXPR_NAME

    def __str__(self) -> str:
        return f"{self.name}({' '.join(self.params)})"


@dataclass(frozen=True)
class FunctionDef:
    proto: Prototype
    body: Expr


# -------------------------
# Helpers
# -------------------------
def to_dict(node: Any) -> Any:
    """Convert a node (and its children) to plain dicts/lists, tagged with node_type."""
    if isinstance(node, tuple):
        return [to_dict(n) for n in node]
    if not hasattr(node, "__dataclass_fields__"):
        return node
    out: Dict[str, Any] = {"node_type": getattr(node, "node_type", type(node).__name__)}
    for f in fields(node):
        out[f.name] = to_dict(getattr(node, f.name))
    return out


def format_expr(expr: Expr) -> str:
    """Render an expression fully parenthesized, e.g. `(1 + (2 * 3))`."""
    if isinstance(expr, NumberExpr):
        return f"{expr.value:g}"
    if isinstance(expr, VariableExpr):
        return expr.name
    if isinstance(expr, BinaryExpr):
        return f"({format_expr(expr.lhs)} {expr.op} {format_expr(expr.rhs)})"
    if isinstance(expr, CallExpr):
        return f"{expr.callee}({', '.join(format_expr(a) for a in expr.args)})"
    if isinstance(expr, IfExpr):
        return f"(if {format_expr(expr.cond)} then {format_expr(expr.then)} else {format_expr(expr.orelse)})"
    if isinstance(expr, ForExpr):
        step = f", {format_expr(expr.step)}" if expr.step is not None else ""
        return (f"(for {expr.var_name} = {format_expr(expr.start)}, {format_expr(expr.end)}{step} "
                f"in {format_expr(expr.body)})")
    raise TypeError(f"not an expression node: {expr!r}")


def dump(node: Any, indent: int = 0) -> str:
    """Indented tree dump used by the parse-only console mode."""
    pad = "  " * indent
    lines: List[str] = []
    if isinstance(node, FunctionDef):
        lines.append(f"{pad}Function {node.proto}")
        lines.append(dump(node.body, indent + 1))
    elif isinstance(node, Prototype):
        lines.append(f"{pad}Extern {node}")
    elif isinstance(node, NumberExpr):
        lines.append(f"{pad}Number {node.value:g}")
    elif isinstance(node, VariableExpr):
        lines.append(f"{pad}Variable {node.name}")
    elif isinstance(node, BinaryExpr):
        lines.append(f"{pad}Binary {node.op!r}")
        lines.append(dump(node.lhs, indent + 1))
        lines.append(dump(node.rhs, indent + 1))
    elif isinstance(node, CallExpr):
        lines.append(f"{pad}Call {node.callee}/{len(node.args)}")
        lines.extend(dump(a, indent + 1) for a in node.args)
    elif isinstance(node, IfExpr):
        lines.append(f"{pad}If")
        lines.extend(dump(c, indent + 1) for c in (node.cond, node.then, node.orelse))
    elif isinstance(node, ForExpr):
        lines.append(f"{pad}For {node.var_name}")
        parts = (node.start, node.end) + ((node.step,) if node.step is not None else ()) + (node.body,)
        lines.extend(dump(c, indent + 1) for c in parts)
    else:
        raise TypeError(f"not an AST node: {node!r}")
    return "\n".join(lines)
