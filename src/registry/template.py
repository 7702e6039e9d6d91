"""Address templates used by mirror installation sources.

A template is literal text with ``${ ... }`` interpolations that may refer to
``hostname``, ``namespace`` and ``type`` of the provider being installed, for
example ``registry.example.net/${namespace}/${type}`` or
``${ {"example.com": "mirror-a"}[hostname] }/${namespace}/${type}``.

Templates are compiled once when the installation configuration is loaded, so
syntax problems surface immediately as TemplateSyntaxError. Evaluation happens
per provider and can fail for only some providers (a lookup table without an
entry for a given hostname, for instance); such failures raise
TemplateEvaluationError for that one call and leave the compiled template
usable for every other provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple, Union

from versioning.models import PluginIdentity

VARIABLES = ("hostname", "namespace", "type")


class TemplateSyntaxError(ValueError):
    """The template text cannot be parsed."""

    def __init__(self, message: str, template: str, offset: int):
        super().__init__(f"{message} at offset {offset} in template {template!r}")
        self.template = template
        self.offset = offset


class TemplateEvaluationError(Exception):
    """A syntactically valid template has no value for one provider."""

    def __init__(self, message: str, identity: PluginIdentity):
        super().__init__(f"cannot evaluate template for {identity}: {message}")
        self.identity = identity


# --- tokenizer ---------------------------------------------------------------

_PUNCT = ("==", "!=", "&&", "||", "{", "}", "[", "]", "(", ")", ",", ":", "=", "?", ".", "!")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r"}


@dataclass(frozen=True)
class _Token:
    kind: str  # "ident", "string", "number", "punct", "end"
    value: Any
    offset: int


def _tokenize(text: str, start: int, template: str) -> Tuple[List[_Token], int]:
    """Tokenize one interpolation body starting after ``${``.

    Returns the tokens and the offset just past the closing ``}``.
    """
    tokens: List[_Token] = []
    depth = 0
    pos = start
    while pos < len(text):
        ch = text[pos]
        if ch.isspace():
            pos += 1
            continue
        if ch == "}" and depth == 0:
            tokens.append(_Token("end", None, pos))
            return tokens, pos + 1
        if ch == '"':
            value, end = _read_string(text, pos, template)
            tokens.append(_Token("string", value, pos))
            pos = end
            continue
        m = _NUMBER_RE.match(text, pos)
        if m:
            raw = m.group(0)
            tokens.append(_Token("number", float(raw) if "." in raw else int(raw), pos))
            pos = m.end()
            continue
        m = _IDENT_RE.match(text, pos)
        if m:
            tokens.append(_Token("ident", m.group(0), pos))
            pos = m.end()
            continue
        for punct in _PUNCT:
            if text.startswith(punct, pos):
                if punct in ("{", "[", "("):
                    depth += 1
                elif punct in ("}", "]", ")"):
                    depth -= 1
                tokens.append(_Token("punct", punct, pos))
                pos += len(punct)
                break
        else:
            raise TemplateSyntaxError(f"unexpected character {ch!r}", template, pos)
    raise TemplateSyntaxError("unterminated interpolation", template, start)


def _read_string(text: str, pos: int, template: str) -> Tuple[str, int]:
    out = []
    i = pos + 1
    while i < len(text):
        ch = text[i]
        if ch == '"':
            return "".join(out), i + 1
        if ch == "\\":
            if i + 1 >= len(text) or text[i + 1] not in _ESCAPES:
                raise TemplateSyntaxError("invalid escape sequence", template, i)
            out.append(_ESCAPES[text[i + 1]])
            i += 2
            continue
        if text.startswith("${", i):
            raise TemplateSyntaxError("nested templates are not supported in string literals", template, i)
        out.append(ch)
        i += 1
    raise TemplateSyntaxError("unterminated string literal", template, pos)


# --- expression tree ---------------------------------------------------------

@dataclass(frozen=True)
class _Literal:
    value: Any


@dataclass(frozen=True)
class _Variable:
    name: str


@dataclass(frozen=True)
class _Object:
    items: Tuple[Tuple["_Expr", "_Expr"], ...]


@dataclass(frozen=True)
class _Tuple:
    items: Tuple["_Expr", ...]


@dataclass(frozen=True)
class _Index:
    collection: "_Expr"
    key: "_Expr"


@dataclass(frozen=True)
class _GetAttr:
    target: "_Expr"
    name: str


@dataclass(frozen=True)
class _Binary:
    op: str
    left: "_Expr"
    right: "_Expr"


@dataclass(frozen=True)
class _Not:
    operand: "_Expr"


@dataclass(frozen=True)
class _Conditional:
    condition: "_Expr"
    if_true: "_Expr"
    if_false: "_Expr"


_Expr = Union[_Literal, _Variable, _Object, _Tuple, _Index, _GetAttr, _Binary, _Not, _Conditional]


class _Parser:
    """Recursive-descent parser over the tokens of one interpolation."""

    def __init__(self, tokens: Sequence[_Token], template: str):
        self.tokens = tokens
        self.template = template
        self.pos = 0

    def peek(self) -> _Token:
        return self.tokens[self.pos]

    def advance(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def accept(self, punct: str) -> bool:
        token = self.peek()
        if token.kind == "punct" and token.value == punct:
            self.pos += 1
            return True
        return False

    def expect(self, punct: str) -> None:
        if not self.accept(punct):
            self.fail(f"expected {punct!r}")

    def fail(self, message: str) -> None:
        token = self.peek()
        found = "end of interpolation" if token.kind == "end" else repr(token.value)
        raise TemplateSyntaxError(f"{message}, found {found}", self.template, token.offset)

    def parse(self) -> _Expr:
        if self.peek().kind == "end":
            self.fail("expected an expression")
        expr = self.conditional()
        if self.peek().kind != "end":
            self.fail("expected '}'")
        return expr

    def conditional(self) -> _Expr:
        condition = self.binary(0)
        if self.accept("?"):
            if_true = self.conditional()
            self.expect(":")
            if_false = self.conditional()
            return _Conditional(condition, if_true, if_false)
        return condition

    _LEVELS = (("||",), ("&&",), ("==", "!="))

    def binary(self, level: int) -> _Expr:
        if level == len(self._LEVELS):
            return self.unary()
        left = self.binary(level + 1)
        while True:
            token = self.peek()
            if token.kind == "punct" and token.value in self._LEVELS[level]:
                self.advance()
                left = _Binary(token.value, left, self.binary(level + 1))
            else:
                return left

    def unary(self) -> _Expr:
        if self.accept("!"):
            return _Not(self.unary())
        return self.postfix()

    def postfix(self) -> _Expr:
        expr = self.primary()
        while True:
            if self.accept("["):
                key = self.conditional()
                self.expect("]")
                expr = _Index(expr, key)
            elif self.accept("."):
                token = self.advance()
                if token.kind == "ident":
                    expr = _GetAttr(expr, token.value)
                elif token.kind == "number" and isinstance(token.value, int):
                    expr = _Index(expr, _Literal(token.value))
                else:
                    self.pos -= 1
                    self.fail("expected attribute name")
            else:
                return expr

    def primary(self) -> _Expr:
        token = self.advance()
        if token.kind in ("string", "number"):
            return _Literal(token.value)
        if token.kind == "ident":
            if token.value == "true":
                return _Literal(True)
            if token.value == "false":
                return _Literal(False)
            if token.value == "null":
                return _Literal(None)
            if token.value not in VARIABLES:
                raise TemplateSyntaxError(
                    f"unknown variable {token.value!r}; templates may only refer to "
                    + ", ".join(VARIABLES),
                    self.template,
                    token.offset,
                )
            return _Variable(token.value)
        if token.kind == "punct":
            if token.value == "(":
                expr = self.conditional()
                self.expect(")")
                return expr
            if token.value == "{":
                return self.object_body()
            if token.value == "[":
                return self.tuple_body()
        self.pos -= 1
        self.fail("expected an expression")
        raise AssertionError("unreachable")

    def object_body(self) -> _Object:
        items = []
        while not self.accept("}"):
            key_token = self.peek()
            if key_token.kind in ("ident", "string"):
                self.advance()
                key: _Expr = _Literal(key_token.value)
            elif self.accept("("):
                key = self.conditional()
                self.expect(")")
            else:
                self.fail("expected object key")
            if not (self.accept("=") or self.accept(":")):
                self.fail("expected '=' or ':' after object key")
            items.append((key, self.conditional()))
            if not self.accept(","):
                self.expect("}")
                break
        return _Object(tuple(items))

    def tuple_body(self) -> _Tuple:
        items = []
        while not self.accept("]"):
            items.append(self.conditional())
            if not self.accept(","):
                self.expect("]")
                break
        return _Tuple(tuple(items))


# --- evaluation --------------------------------------------------------------

def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    return "tuple"


def _evaluate(expr: _Expr, scope: Dict[str, str], identity: PluginIdentity) -> Any:
    if isinstance(expr, _Literal):
        return expr.value
    if isinstance(expr, _Variable):
        return scope[expr.name]
    if isinstance(expr, _Object):
        result = {}
        for key_expr, value_expr in expr.items:
            key = _evaluate(key_expr, scope, identity)
            if not isinstance(key, (str, int, float)) or isinstance(key, bool):
                raise TemplateEvaluationError(f"object key must be a string, not {_type_name(key)}", identity)
            result[_render(key, identity)] = _evaluate(value_expr, scope, identity)
        return result
    if isinstance(expr, _Tuple):
        return [_evaluate(item, scope, identity) for item in expr.items]
    if isinstance(expr, _Index):
        return _index(_evaluate(expr.collection, scope, identity), _evaluate(expr.key, scope, identity), identity)
    if isinstance(expr, _GetAttr):
        target = _evaluate(expr.target, scope, identity)
        if not isinstance(target, dict):
            raise TemplateEvaluationError(
                f"cannot access attribute {expr.name!r} of a {_type_name(target)} value", identity
            )
        return _index(target, expr.name, identity)
    if isinstance(expr, _Not):
        return not _require_bool(_evaluate(expr.operand, scope, identity), identity)
    if isinstance(expr, _Binary):
        left = _evaluate(expr.left, scope, identity)
        if expr.op == "==":
            return left == _evaluate(expr.right, scope, identity)
        if expr.op == "!=":
            return left != _evaluate(expr.right, scope, identity)
        # Short-circuit so the unused branch cannot fail evaluation.
        if expr.op == "&&":
            return _require_bool(left, identity) and _require_bool(_evaluate(expr.right, scope, identity), identity)
        return _require_bool(left, identity) or _require_bool(_evaluate(expr.right, scope, identity), identity)
    condition = _require_bool(_evaluate(expr.condition, scope, identity), identity)
    return _evaluate(expr.if_true if condition else expr.if_false, scope, identity)


def _require_bool(value: Any, identity: PluginIdentity) -> bool:
    if not isinstance(value, bool):
        raise TemplateEvaluationError(f"a bool is required here, not {_type_name(value)}", identity)
    return value


def _index(collection: Any, key: Any, identity: PluginIdentity) -> Any:
    if isinstance(collection, dict):
        if isinstance(key, bool) or not isinstance(key, (str, int, float)):
            raise TemplateEvaluationError(f"cannot index an object with a {_type_name(key)} key", identity)
        name = _render(key, identity)
        if name not in collection:
            raise TemplateEvaluationError(f"the given key {name!r} does not exist in the object", identity)
        return collection[name]
    if isinstance(collection, list):
        if isinstance(key, bool) or not isinstance(key, (int, float)) or int(key) != key:
            raise TemplateEvaluationError(f"tuple index must be a whole number, not {key!r}", identity)
        position = int(key)
        if not 0 <= position < len(collection):
            raise TemplateEvaluationError(f"index {position} is out of range for a tuple of {len(collection)}", identity)
        return collection[position]
    raise TemplateEvaluationError(f"cannot index a {_type_name(collection)} value", identity)


def _render(value: Any, identity: PluginIdentity) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    raise TemplateEvaluationError(f"cannot interpolate a {_type_name(value)} value into a string", identity)


# --- public API --------------------------------------------------------------

@dataclass(frozen=True)
class CompiledTemplate:
    """A parsed template, ready to evaluate for any number of providers."""

    source: str
    parts: Tuple[Union[str, _Expr], ...]

    def variables(self) -> Tuple[str, ...]:
        """Names of the provider address variables the template refers to."""
        found: List[str] = []

        def walk(node: Any) -> None:
            if isinstance(node, _Variable):
                if node.name not in found:
                    found.append(node.name)
            elif isinstance(node, tuple):
                for child in node:
                    walk(child)
            elif hasattr(node, "__dataclass_fields__"):
                for name in node.__dataclass_fields__:
                    walk(getattr(node, name))

        walk(self.parts)
        return tuple(found)

    def evaluate(self, identity: PluginIdentity) -> str:
        """Render the template for one provider.

        Raises:
            TemplateEvaluationError: if the template has no value for ``identity``.
        """
        scope = {"hostname": identity.hostname, "namespace": identity.namespace, "type": identity.type}
        out = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(part)
            else:
                out.append(_render(_evaluate(part, scope, identity), identity))
        return "".join(out)

    def __str__(self) -> str:
        return self.source


def compile_template(text: str) -> CompiledTemplate:
    """Parse ``text`` into a CompiledTemplate.

    Raises:
        TemplateSyntaxError: if the template is malformed or refers to an
            unknown variable.
    """
    parts: List[Union[str, _Expr]] = []
    literal: List[str] = []
    pos = 0
    while pos < len(text):
        if text.startswith("$${", pos):
            literal.append("${")
            pos += 3
            continue
        if text.startswith("${", pos):
            if literal:
                parts.append("".join(literal))
                literal = []
            tokens, pos = _tokenize(text, pos + 2, text)
            parts.append(_Parser(tokens, text).parse())
            continue
        literal.append(text[pos])
        pos += 1
    if literal:
        parts.append("".join(literal))
    return CompiledTemplate(source=text, parts=tuple(parts))


def evaluate_template(template: Union[str, CompiledTemplate], identity: PluginIdentity) -> str:
    """Compile (if needed) and evaluate ``template`` for ``identity``."""
    compiled = template if isinstance(template, CompiledTemplate) else compile_template(template)
    return compiled.evaluate(identity)

