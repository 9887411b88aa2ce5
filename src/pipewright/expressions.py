# expressions.py
"""
The `${{ ... }}` expression language used in templates and `if:` conditions.

    expr    := or
    or      := and ('||' and)*
    and     := unary ('&&' unary)*
    unary   := '!' unary | compare
    compare := primary (('==' | '!=' | '<' | '<=' | '>' | '>=') primary)?
    primary := literal | '(' expr ')' | name '(' args ')' | name accessor*
    accessor:= '.' name | '[' expr ']'

Semantics follow the GitHub Actions dialect the workflow files are written
in: missing properties are null, string comparison ignores case, mixed types
compare as numbers, `&&` / `||` return an operand rather than a bool.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .errors import ExpressionError

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

_TEMPLATE_OPEN = "${{"
_TEMPLATE_CLOSE = "}}"


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_PUNCT = ("&&", "||", "==", "!=", "<=", ">=", "<", ">", "!", "(", ")", "[", "]", ".", ",")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_NUMBER_RE = re.compile(r"-?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class _Token:
    kind: str  # "punct" | "ident" | "string" | "number" | "end"
    value: Any
    pos: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue

        if ch == "'":
            j = i + 1
            buf = []
            while True:
                if j >= n:
                    raise ExpressionError(f"Unterminated string in expression: {source!r}")
                if source[j] == "'":
                    if j + 1 < n and source[j + 1] == "'":
                        buf.append("'")
                        j += 2
                        continue
                    break
                buf.append(source[j])
                j += 1
            tokens.append(_Token("string", "".join(buf), i))
            i = j + 1
            continue

        m = _NUMBER_RE.match(source, i)
        if m and (ch != "-" or not tokens or tokens[-1].kind == "punct" and tokens[-1].value not in (")", "]")):
            text = m.group(0)
            value: Any = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(_Token("number", value, i))
            i = m.end()
            continue

        m = _IDENT_RE.match(source, i)
        if m:
            tokens.append(_Token("ident", m.group(0), i))
            i = m.end()
            continue

        for p in _PUNCT:
            if source.startswith(p, i):
                tokens.append(_Token("punct", p, i))
                i += len(p)
                break
        else:
            raise ExpressionError(f"Unexpected character {ch!r} at {i} in expression: {source!r}")

    tokens.append(_Token("end", None, n))
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Index:
    target: Any
    key: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BinOp:
    op: str
    left: Any
    right: Any


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def _peek(self) -> _Token:
        return self.tokens[self.pos]

    def _next(self) -> _Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok.kind == "punct" and tok.value == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            raise ExpressionError(
                f"Expected {value!r} at {tok.pos} in expression: {self.source!r}"
            )

    def parse(self):
        if self._peek().kind == "end":
            raise ExpressionError("Empty expression")
        node = self._or()
        if self._peek().kind != "end":
            tok = self._peek()
            raise ExpressionError(f"Unexpected {tok.value!r} at {tok.pos} in expression: {self.source!r}")
        return node

    def _or(self):
        node = self._and()
        while self._accept("||"):
            node = BinOp("||", node, self._and())
        return node

    def _and(self):
        node = self._unary()
        while self._accept("&&"):
            node = BinOp("&&", node, self._unary())
        return node

    def _unary(self):
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self):
        node = self._primary()
        tok = self._peek()
        if tok.kind == "punct" and tok.value in ("==", "!=", "<", "<=", ">", ">="):
            self.pos += 1
            node = BinOp(tok.value, node, self._primary())
        return node

    def _primary(self):
        tok = self._next()
        if tok.kind in ("string", "number"):
            node: Any = Literal(tok.value)
        elif tok.kind == "punct" and tok.value == "(":
            node = self._or()
            self._expect(")")
        elif tok.kind == "ident":
            word = tok.value
            lowered = word.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            if self._accept("("):
                args = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                node = Call(lowered, tuple(args))
            else:
                node = Name(word)
        else:
            raise ExpressionError(
                f"Unexpected {tok.value!r} at {tok.pos} in expression: {self.source!r}"
            )

        while True:
            if self._accept("."):
                ident = self._next()
                if ident.kind != "ident":
                    raise ExpressionError(
                        f"Expected property name at {ident.pos} in expression: {self.source!r}"
                    )
                node = Index(node, Literal(ident.value))
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = Index(node, key)
            else:
                return node


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            return float(int(text, 16)) if text.lower().startswith("0x") else float(text)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if a is None and b is None:
        return True
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return a is b
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _loose_equal(a, b)
    if op == "!=":
        return not _loose_equal(a, b)
    if isinstance(a, str) and isinstance(b, str):
        x: Any = a.casefold()
        y: Any = b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        if key in container:
            return container[key]
        if isinstance(key, str):
            folded = key.casefold()
            for k, v in container.items():
                if isinstance(k, str) and k.casefold() == folded:
                    return v
        return None
    if isinstance(container, (list, tuple)):
        idx = _to_number(key)
        if math.isnan(idx) or idx != int(idx):
            return None
        i = int(idx)
        return container[i] if 0 <= i < len(container) else None
    return None


def to_str(value: Any) -> str:
    """Render an expression value into template text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value == int(value):
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _default_status(name: str) -> bool:
    return name in ("success", "always")


@dataclass
class EvalContext:
    """Named contexts (`env`, `steps`, `needs`, ...) plus the status-check callback."""
    values: Mapping[str, Any] = field(default_factory=dict)
    status: Callable[[str], bool] = _default_status


def _format(template: str, *args: Any) -> str:
    out = []
    i = 0
    n = len(template)
    while i < n:
        ch = template[i]
        if ch == "{" and i + 1 < n and template[i + 1] == "{":
            out.append("{")
            i += 2
        elif ch == "}" and i + 1 < n and template[i + 1] == "}":
            out.append("}")
            i += 2
        elif ch == "{":
            end = template.find("}", i)
            if end == -1:
                raise ExpressionError(f"Invalid format string: {template!r}")
            try:
                idx = int(template[i + 1:end])
                out.append(to_str(args[idx]))
            except (ValueError, IndexError):
                raise ExpressionError(f"Invalid format string: {template!r}")
            i = end + 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _call(name: str, args: List[Any], ctx: EvalContext) -> Any:
    if name in STATUS_FUNCTIONS:
        if args:
            raise ExpressionError(f"{name}() takes no arguments")
        return ctx.status(name)
    if name == "contains":
        haystack, needle = (args + [None, None])[:2]
        if isinstance(haystack, (list, tuple)):
            return any(_loose_equal(item, needle) for item in haystack)
        return to_str(needle).casefold() in to_str(haystack).casefold()
    if name == "startswith":
        return to_str(args[0]).casefold().startswith(to_str(args[1]).casefold())
    if name == "endswith":
        return to_str(args[0]).casefold().endswith(to_str(args[1]).casefold())
    if name == "format":
        if not args:
            raise ExpressionError("format() requires a format string")
        return _format(to_str(args[0]), *args[1:])
    if name == "join":
        items = args[0] if args else None
        sep = to_str(args[1]) if len(args) > 1 else ","
        if isinstance(items, (list, tuple)):
            return sep.join(to_str(i) for i in items)
        return to_str(items)
    if name == "tojson":
        return json.dumps(args[0] if args else None, indent=2)
    if name == "fromjson":
        try:
            return json.loads(to_str(args[0] if args else ""))
        except ValueError as e:
            raise ExpressionError(f"fromJSON() got invalid JSON: {e}")
    raise ExpressionError(f"Unknown function '{name}'")


def _evaluate(node: Any, ctx: EvalContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return _lookup(ctx.values, node.name)
    if isinstance(node, Index):
        return _lookup(_evaluate(node.target, ctx), _evaluate(node.key, ctx))
    if isinstance(node, Not):
        return not truthy(_evaluate(node.operand, ctx))
    if isinstance(node, Call):
        return _call(node.name, [_evaluate(a, ctx) for a in node.args], ctx)
    if isinstance(node, BinOp):
        if node.op == "&&":
            left = _evaluate(node.left, ctx)
            return _evaluate(node.right, ctx) if truthy(left) else left
        if node.op == "||":
            left = _evaluate(node.left, ctx)
            return left if truthy(left) else _evaluate(node.right, ctx)
        return _compare(node.op, _evaluate(node.left, ctx), _evaluate(node.right, ctx))
    raise ExpressionError(f"Cannot evaluate node {node!r}")


def _walk(node: Any):
    yield node
    if isinstance(node, Index):
        yield from _walk(node.target)
        yield from _walk(node.key)
    elif isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, BinOp):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Call):
        for a in node.args:
            yield from _walk(a)


class Expression:
    """A compiled expression (the text between `${{` and `}}`)."""

    def __init__(self, source: str):
        self.source = source.strip()
        self.node = _Parser(self.source).parse()

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def evaluate(self, ctx: EvalContext) -> Any:
        return _evaluate(self.node, ctx)

    @property
    def uses_status_function(self) -> bool:
        return any(isinstance(n, Call) and n.name in STATUS_FUNCTIONS for n in _walk(self.node))

    def references(self, context: str) -> Set[str]:
        """Property names read directly off a context, e.g. `secrets.TOKEN` -> {"TOKEN"}."""
        found: Set[str] = set()
        for n in _walk(self.node):
            if (
                isinstance(n, Index)
                and isinstance(n.target, Name)
                and n.target.name.casefold() == context.casefold()
                and isinstance(n.key, Literal)
                and isinstance(n.key.value, str)
            ):
                found.add(n.key.value)
        return found


@lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    return Expression(source)


# ---------------------------------------------------------------------
# Templates and conditions
# ---------------------------------------------------------------------

def _split_template(text: str) -> List[Tuple[bool, str]]:
    """Split text into literal chunks and `${{ }}` expression bodies."""
    parts: List[Tuple[bool, str]] = []
    i = 0
    while True:
        start = text.find(_TEMPLATE_OPEN, i)
        if start == -1:
            if i < len(text):
                parts.append((False, text[i:]))
            return parts
        if start > i:
            parts.append((False, text[i:start]))
        j = start + len(_TEMPLATE_OPEN)
        in_string = False
        while j < len(text):
            if text[j] == "'":
                in_string = not in_string
            elif not in_string and text.startswith(_TEMPLATE_CLOSE, j):
                break
            j += 1
        else:
            raise ExpressionError(f"Unterminated '${{{{' in: {text!r}")
        parts.append((True, text[start + len(_TEMPLATE_OPEN):j]))
        i = j + len(_TEMPLATE_CLOSE)


def is_template(text: Any) -> bool:
    return isinstance(text, str) and _TEMPLATE_OPEN in text


def template_expressions(text: str) -> List[Expression]:
    return [compile_expression(body) for is_expr, body in _split_template(text) if is_expr]


def render(text: str, ctx: EvalContext) -> str:
    if not is_template(text):
        return text
    out = []
    for is_expr, chunk in _split_template(text):
        out.append(to_str(compile_expression(chunk).evaluate(ctx)) if is_expr else chunk)
    return "".join(out)


def render_mapping(values: Mapping[str, Any], ctx: EvalContext) -> Dict[str, str]:
    return {k: render(to_str(v), ctx) for k, v in values.items()}


def _condition_source(condition: Optional[str]) -> str:
    text = (condition or "").strip()
    if text.startswith(_TEMPLATE_OPEN) and text.endswith(_TEMPLATE_CLOSE):
        parts = _split_template(text)
        if len(parts) == 1 and parts[0][0]:
            text = parts[0][1].strip()
    return text


def compile_condition(condition: Optional[str]) -> Expression:
    """
    Compile an `if:` condition. A condition that does not call a status
    function is implicitly `success() && (<condition>)`.
    """
    text = _condition_source(condition)
    if not text:
        return compile_expression("success()")
    expr = compile_expression(text)
    if expr.uses_status_function:
        return expr
    return compile_expression(f"success() && ({text})")


def evaluate_condition(condition: Optional[str], ctx: EvalContext) -> bool:
    return truthy(compile_condition(condition).evaluate(ctx))


def condition_opts_into_failure(condition: Optional[str]) -> bool:
    """True when the condition itself decides what happens after a failure."""
    text = _condition_source(condition)
    return bool(text) and compile_expression(text).uses_status_function


def referenced(templates, context: str, conditions=()) -> Set[str]:
    """Every `<context>.<name>` read by the given templates and `if:` conditions."""
    names: Set[str] = set()
    for text in templates:
        if is_template(text):
            for expr in template_expressions(text):
                names |= expr.references(context)
    for cond in conditions:
        if cond:
            names |= compile_condition(cond).references(context)
    return names
