"""
Recursive-descent parser for the expression language.

Precedence, lowest to highest:

    ternary        a ? b : c
    logical or     ||
    logical and    &&
    equality       === !== == !=
    relational     < > <= >=
    additive       + -
    multiplicative * / %
    unary          ! - + typeof
    postfix        a.b  a[b]  a(b)
    primary        literal, identifier, slot, (expr), [elements]
"""
from __future__ import annotations

from models.errors import ExpressionSyntaxError
from expressions.ast import (
    ArrayLiteral, Binary, Call, Conditional, Identifier, Index,
    Literal, Logical, Member, Node, SlotRef, Unary,
)
from expressions.lexer import Token
from expressions.values import UNDEFINED

KEYWORD_LITERALS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
}

MAX_DEPTH = 64


class Parser:

    def __init__(self, tokens: list[Token], expression: str = ""):
        self._tokens = tokens
        self._pos = 0
        self._expression = expression
        self._depth = 0

    # ── helpers ───────────────────────────────────────

    @property
    def _current(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.kind != "EOF":
            self._pos += 1
        return token

    def _check_op(self, *ops: str) -> bool:
        token = self._current
        return token.kind == "OP" and token.value in ops

    def _expect_op(self, op: str) -> Token:
        if not self._check_op(op):
            self._error(f"Expected '{op}'")
        return self._advance()

    def _error(self, message: str):
        token = self._current
        found = "end of expression" if token.kind == "EOF" else repr(token.value)
        raise ExpressionSyntaxError(f"{message}, found {found}", self._expression, token.position)

    # ── entry point ───────────────────────────────────

    def parse(self) -> Node:
        if self._current.kind == "EOF":
            raise ExpressionSyntaxError("Empty expression", self._expression, 0)
        node = self._ternary()
        if self._current.kind != "EOF":
            self._error("Unexpected token")
        return node

    # ── grammar ───────────────────────────────────────

    def _ternary(self) -> Node:
        self._depth += 1
        if self._depth > MAX_DEPTH:
            raise ExpressionSyntaxError("Expression nested too deeply", self._expression)
        try:
            test = self._logical_or()
            if self._check_op("?"):
                position = self._advance().position
                consequent = self._ternary()
                self._expect_op(":")
                alternate = self._ternary()
                return Conditional(test, consequent, alternate, position=position)
            return test
        finally:
            self._depth -= 1

    def _logical_or(self) -> Node:
        node = self._logical_and()
        while self._check_op("||"):
            token = self._advance()
            node = Logical("||", node, self._logical_and(), position=token.position)
        return node

    def _logical_and(self) -> Node:
        node = self._equality()
        while self._check_op("&&"):
            token = self._advance()
            node = Logical("&&", node, self._equality(), position=token.position)
        return node

    def _equality(self) -> Node:
        node = self._relational()
        while self._check_op("===", "!==", "==", "!="):
            token = self._advance()
            node = Binary(token.value, node, self._relational(), position=token.position)
        return node

    def _relational(self) -> Node:
        node = self._additive()
        while self._check_op("<", ">", "<=", ">="):
            token = self._advance()
            node = Binary(token.value, node, self._additive(), position=token.position)
        return node

    def _additive(self) -> Node:
        node = self._multiplicative()
        while self._check_op("+", "-"):
            token = self._advance()
            node = Binary(token.value, node, self._multiplicative(), position=token.position)
        return node

    def _multiplicative(self) -> Node:
        node = self._unary()
        while self._check_op("*", "/", "%"):
            token = self._advance()
            node = Binary(token.value, node, self._unary(), position=token.position)
        return node

    def _unary(self) -> Node:
        if self._check_op("!", "-", "+"):
            token = self._advance()
            return Unary(token.value, self._unary(), position=token.position)
        if self._current.kind == "IDENT" and self._current.value == "typeof":
            token = self._advance()
            return Unary("typeof", self._unary(), position=token.position)
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._check_op("."):
                self._advance()
                name = self._current
                if name.kind != "IDENT":
                    self._error("Expected property name after '.'")
                self._advance()
                node = Member(node, name.value, position=name.position)
            elif self._check_op("["):
                token = self._advance()
                index = self._ternary()
                self._expect_op("]")
                node = Index(node, index, position=token.position)
            elif self._check_op("("):
                token = self._advance()
                args = self._arguments(")")
                node = Call(node, args, position=token.position)
            else:
                return node

    def _arguments(self, closing: str) -> list[Node]:
        args: list[Node] = []
        if self._check_op(closing):
            self._advance()
            return args
        while True:
            args.append(self._ternary())
            if self._check_op(","):
                self._advance()
                continue
            self._expect_op(closing)
            return args

    def _primary(self) -> Node:
        token = self._current
        if token.kind == "NUMBER" or token.kind == "STRING":
            self._advance()
            return Literal(token.value, position=token.position)
        if token.kind == "SLOT":
            self._advance()
            return SlotRef(token.value.value, token.value.path, position=token.position)
        if token.kind == "IDENT":
            self._advance()
            if token.value in KEYWORD_LITERALS:
                return Literal(KEYWORD_LITERALS[token.value], position=token.position)
            return Identifier(token.value, position=token.position)
        if self._check_op("("):
            self._advance()
            node = self._ternary()
            self._expect_op(")")
            return node
        if self._check_op("["):
            self._advance()
            return ArrayLiteral(self._arguments("]"), position=token.position)
        self._error("Unexpected token")


def parse(tokens: list[Token], expression: str = "") -> Node:
    return Parser(tokens, expression).parse()
