"""
Safe Expression Language.

Flow definitions embed small JavaScript-flavoured expressions in `{{ }}`
placeholders, SET values, CASE conditions and tool arguments. They are
evaluated here without ever handing text to Python's own eval:

  - Substitution: `{{path}}` lookups become typed slots
  - Parsing: a recursive-descent parser builds an AST
  - Policy: a deny-list plus per-level structural checks
  - Evaluation: a tree walker with explicit coercion rules and a
    whitelist of callable methods and functions
"""
from expressions.evaluator import ExpressionEvaluator, EvalResult
from expressions.environment import VariableEnvironment
from expressions.security import SecurityLevel
from expressions.functions import FunctionRegistry
from expressions.values import UNDEFINED, render, truthy, to_storable
