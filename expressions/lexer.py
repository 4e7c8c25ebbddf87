"""
Tokenizer for the expression language.

Input is a sequence of segments produced by the substitution phase: plain
source text, or `Slot` objects holding an already-resolved value. Slots pass
through as single SLOT tokens, so a variable's content is never re-read as
source code.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from models.errors import ExpressionSyntaxError


@dataclass
class Slot:
    """A value spliced in by the substitution phase."""
    value: Any
    path: str = ""


@dataclass
class Token:
    kind: str              # NUMBER | STRING | IDENT | OP | SLOT | EOF
    value: Any
    position: int = 0


Segment = Union[str, Slot]

# longest operators first so "===" wins over "=="
OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "+", "-", "*", "/", "%", "!", "?", ":",
    ".", ",", "(", ")", "[", "]",
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_part(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def tokenize(segments: list[Segment], expression: str = "") -> list[Token]:
    tokens: list[Token] = []
    offset = 0
    for segment in segments:
        if isinstance(segment, Slot):
            tokens.append(Token("SLOT", segment, offset))
            continue
        tokens.extend(_tokenize_text(segment, offset, expression))
        offset += len(segment)
    tokens.append(Token("EOF", None, offset))
    return tokens


def _tokenize_text(text: str, base: int, expression: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < n and text[i + 1].isdigit()):
            start = i
            while i < n and text[i].isdigit():
                i += 1
            is_float = False
            if i < n and text[i] == "." and i + 1 < n and text[i + 1].isdigit():
                is_float = True
                i += 1
                while i < n and text[i].isdigit():
                    i += 1
            if i < n and text[i] in "eE":
                j = i + 1
                if j < n and text[j] in "+-":
                    j += 1
                if j < n and text[j].isdigit():
                    is_float = True
                    i = j
                    while i < n and text[i].isdigit():
                        i += 1
            raw = text[start:i]
            tokens.append(Token("NUMBER", float(raw) if is_float else int(raw), base + start))
            continue

        if ch in "\"'":
            quote = ch
            start = i
            i += 1
            chars: list[str] = []
            while i < n and text[i] != quote:
                if text[i] == "\\" and i + 1 < n:
                    chars.append(_ESCAPES.get(text[i + 1], text[i + 1]))
                    i += 2
                    continue
                chars.append(text[i])
                i += 1
            if i >= n:
                raise ExpressionSyntaxError("Unterminated string literal", expression, base + start)
            i += 1
            tokens.append(Token("STRING", "".join(chars), base + start))
            continue

        if _is_ident_start(ch):
            start = i
            while i < n and _is_ident_part(text[i]):
                i += 1
            tokens.append(Token("IDENT", text[start:i], base + start))
            continue

        for op in OPERATORS:
            if text.startswith(op, i):
                tokens.append(Token("OP", op, base + i))
                i += len(op)
                break
        else:
            raise ExpressionSyntaxError(f"Unexpected character '{ch}'", expression, base + i)
    return tokens
