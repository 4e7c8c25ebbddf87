"""AST node types produced by the expression parser."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Node:
    position: int = field(default=0, kw_only=True)


@dataclass
class Literal(Node):
    value: Any


@dataclass
class SlotRef(Node):
    """A value spliced in by the substitution phase."""
    value: Any
    path: str = ""


@dataclass
class Identifier(Node):
    name: str


@dataclass
class Member(Node):
    obj: Node
    name: str


@dataclass
class Index(Node):
    obj: Node
    index: Node


@dataclass
class Call(Node):
    callee: Node
    args: list[Node]


@dataclass
class Unary(Node):
    op: str
    operand: Node


@dataclass
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass
class Logical(Node):
    op: str
    left: Node
    right: Node


@dataclass
class Conditional(Node):
    test: Node
    consequent: Node
    alternate: Node


@dataclass
class ArrayLiteral(Node):
    elements: list[Node]


def walk(node: Node):
    """Yield every node in the tree, parents before children."""
    yield node
    if isinstance(node, Member):
        yield from walk(node.obj)
    elif isinstance(node, Index):
        yield from walk(node.obj)
        yield from walk(node.index)
    elif isinstance(node, Call):
        yield from walk(node.callee)
        for arg in node.args:
            yield from walk(arg)
    elif isinstance(node, Unary):
        yield from walk(node.operand)
    elif isinstance(node, (Binary, Logical)):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, Conditional):
        yield from walk(node.test)
        yield from walk(node.consequent)
        yield from walk(node.alternate)
    elif isinstance(node, ArrayLiteral):
        for element in node.elements:
            yield from walk(element)
