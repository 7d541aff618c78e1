"""
Restricted Expression Evaluator.

Evaluates the small expression language used inside ``{{ ... }}`` templates
and CONDITION nodes: property paths, literals, comparisons, boolean
operators and an allow-listed set of predicate functions. Nothing here can
reach Python builtins or attributes; paths only walk dicts and lists.

Examples:
    cart.items.length > 0
    shipment.status === "OUT_FOR_DELIVERY" || shipment.status === "DELIVERED"
    order === null
    !empty(event.email) && contains(tags, "vip")
"""

from typing import Any, Callable, List, Optional, Sequence, Tuple, Union
from functools import lru_cache
import re

from storeflow.engine.errors import ExpressionError


PathSegment = Union[str, int]
Lookup = Callable[[Sequence[PathSegment]], Any]

_MISSING = object()

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!])
  | (?P<punct>[.()\[\],])
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
""", re.VERBOSE)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_LITERALS = {"true": True, "false": False, "null": None, "undefined": None, "None": None}
_COMPARISONS = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}


def _length(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (list, tuple, str, dict)):
        return len(value)
    raise TypeError(f"len() of {type(value).__name__}")


def _empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, dict)) and not value)


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, dict)):
        return item in container
    return False


def _number(value: Any) -> float:
    number = float(value)
    return int(number) if number.is_integer() else number


# Functions callable from expressions
FUNCTIONS = {
    "len": _length,
    "exists": lambda value: value is not None,
    "empty": _empty,
    "contains": _contains,
    "startsWith": lambda s, p: isinstance(s, str) and isinstance(p, str) and s.startswith(p),
    "endsWith": lambda s, p: isinstance(s, str) and isinstance(p, str) and s.endswith(p),
    "lower": lambda s: s.lower() if isinstance(s, str) else s,
    "upper": lambda s: s.upper() if isinstance(s, str) else s,
    "number": _number,
}


# ============================================================
# Tokenizer
# ============================================================

def tokenize(expression: str) -> List[Tuple[str, str]]:
    """Split an expression into (kind, text) tokens."""
    tokens = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            raise ExpressionError(f"Unexpected character {expression[pos]!r} at {pos}", expression)
        pos = match.end()
        kind = match.lastgroup
        text = match.group()
        if kind == "ws":
            continue
        if kind == "ident" and text in _KEYWORD_OPS:
            kind, text = "op", _KEYWORD_OPS[text]
        tokens.append((kind, text))
    return tokens


# ============================================================
# Parser
# ============================================================

class _Parser:
    """Recursive-descent parser producing a tuple-based AST."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0

    def parse(self) -> tuple:
        if not self.tokens:
            raise ExpressionError("Empty expression", self.expression)
        node = self._or()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Unexpected token {self.tokens[self.pos][1]!r}", self.expression)
        return node

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, text: str) -> bool:
        token = self._peek()
        if token and token[1] == text and token[0] in ("op", "punct"):
            self.pos += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            raise ExpressionError(f"Expected {text!r}", self.expression)

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._not()
        while self._accept("&&"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> tuple:
        if self._accept("!"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> tuple:
        node = self._primary()
        token = self._peek()
        if token and token[0] == "op" and token[1] in _COMPARISONS:
            self.pos += 1
            node = ("cmp", token[1], node, self._primary())
        return node

    def _primary(self) -> tuple:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression", self.expression)
        kind, text = token
        self.pos += 1

        if kind == "number":
            return ("lit", float(text) if "." in text else int(text))
        if kind == "string":
            return ("lit", _unquote(text))
        if kind == "punct" and text == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "punct" and text == "[":
            items = []
            if not self._accept("]"):
                items.append(self._or())
                while self._accept(","):
                    items.append(self._or())
                self._expect("]")
            return ("list", tuple(items))
        if kind == "ident":
            if text in _LITERALS:
                return ("lit", _LITERALS[text])
            if self._accept("("):
                return self._call(text)
            return self._path(text)
        raise ExpressionError(f"Unexpected token {text!r}", self.expression)

    def _call(self, name: str) -> tuple:
        if name not in FUNCTIONS:
            raise ExpressionError(f"Unknown function '{name}'", self.expression)
        args = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        return ("call", name, tuple(args))

    def _path(self, head: str) -> tuple:
        segments: List[PathSegment] = [head]
        while True:
            if self._accept("."):
                token = self._peek()
                if not token or token[0] != "ident":
                    raise ExpressionError("Expected property name after '.'", self.expression)
                self.pos += 1
                segments.append(token[1])
            elif self._accept("["):
                token = self._peek()
                if not token or token[0] not in ("number", "string"):
                    raise ExpressionError("Only literal indexes are allowed", self.expression)
                self.pos += 1
                segments.append(int(token[1]) if token[0] == "number" else _unquote(token[1]))
                self._expect("]")
            else:
                return ("path", tuple(segments))


def _unquote(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text[1:-1])


@lru_cache(maxsize=512)
def parse(expression: str) -> tuple:
    """Parse an expression into an AST (cached)."""
    return _Parser(expression).parse()


# ============================================================
# Evaluation
# ============================================================

def evaluate(expression: str, lookup: Lookup) -> Any:
    """
    Evaluate an expression.

    Args:
        expression: Expression source, without the ``{{ }}`` delimiters
        lookup: Resolves a path (list of segments) to a value, or None

    Returns:
        The expression value

    Raises:
        ExpressionError: On syntax errors or invalid operations
    """
    ast = parse(expression.strip())
    try:
        return _eval(ast, lookup)
    except ExpressionError:
        raise
    except (TypeError, ValueError, KeyError, IndexError) as e:
        raise ExpressionError(str(e), expression) from e


def _eval(node: tuple, lookup: Lookup) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "path":
        return lookup(node[1])
    if kind == "list":
        return [_eval(item, lookup) for item in node[1]]
    if kind == "not":
        return not _eval(node[1], lookup)
    if kind == "and":
        left = _eval(node[1], lookup)
        return _eval(node[2], lookup) if left else left
    if kind == "or":
        left = _eval(node[1], lookup)
        return left if left else _eval(node[2], lookup)
    if kind == "call":
        return FUNCTIONS[node[1]](*[_eval(arg, lookup) for arg in node[2]])
    if kind == "cmp":
        return _compare(node[1], _eval(node[2], lookup), _eval(node[3], lookup))
    raise ExpressionError(f"Unknown node {kind!r}")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "==="):
        return left == right
    if op in ("!=", "!=="):
        return left != right
    if left is None or right is None:
        raise TypeError(f"Cannot compare {left!r} {op} {right!r}")
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def get_path(data: Any, path: Union[str, Sequence[PathSegment]]) -> Any:
    """
    Walk dicts and lists along a dotted path.

    ``length`` on a list, string or dict yields its size. Missing keys
    and out-of-range indexes resolve to None.
    """
    segments = path.split(".") if isinstance(path, str) else path
    current = data
    for segment in segments:
        if current is None:
            return None
        if isinstance(current, dict):
            value = current.get(segment, _MISSING)
            if value is _MISSING:
                if segment == "length":
                    return len(current)
                return None
            current = value
        elif isinstance(current, (list, tuple, str)):
            if segment == "length":
                current = len(current)
                continue
            if isinstance(current, str):
                return None
            try:
                index = int(segment)
            except ValueError:
                return None
            if index < 0 or index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current
