"""Condition evaluation for job gates and `${{ }}` templates.

Provides:
- ExpressionParser: tokenize + parse the small expression language into an AST
- ConditionEvaluator: evaluate a condition against an evaluation context
- ContextBuilder: build that context from run metadata and upstream results
- render: interpolate `${{ expr }}` placeholders inside strings

The language follows the GitHub Actions shape, e.g.::

    github.ref == 'refs/heads/main' && github.event_name == 'push'
    always() && needs.build.result == 'failure'
    startsWith(run.branch, 'release/')
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ConditionSyntaxError
from .model import JobResult, JobStatus, RunContext, satisfies
from .outputs import OutputStore

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

_TEMPLATE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),])
  | (?P<path>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_*][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Path:
    parts: Tuple[str, ...]

    @property
    def text(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def strip_template(expression: str) -> str:
    text = expression.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m:
            raise ConditionSyntaxError(
                f"Unexpected character {text[pos]!r} at position {pos}",
                details={"expression": text},
            )
        kind = m.lastgroup
        if kind != "ws":
            tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class ExpressionParser:
    """
    Recursive-descent parser. Precedence, lowest first:
    `||`, `&&`, equality, comparison, `!`, primary.
    """

    def __init__(self, expression: str):
        self.source = strip_template(expression)
        self.tokens = _tokenize(self.source)
        self.pos = 0

    def parse(self):
        if not self.tokens:
            raise ConditionSyntaxError("Empty expression", details={"expression": self.source})
        node = self._or()
        if self.pos != len(self.tokens):
            raise self._error(f"Unexpected token {self.tokens[self.pos][1]!r}")
        return node

    def _error(self, message: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(message, details={"expression": self.source})

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, *ops: str) -> Optional[str]:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            raise self._error(f"Expected {op!r}")

    def _or(self):
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self):
        node = self._equality()
        while self._accept("&&"):
            node = Binary("&&", node, self._equality())
        return node

    def _equality(self):
        node = self._comparison()
        while True:
            op = self._accept("==", "!=")
            if op is None:
                return node
            node = Binary(op, node, self._comparison())

    def _comparison(self):
        node = self._unary()
        while True:
            op = self._accept("<", "<=", ">", ">=")
            if op is None:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self):
        if self._accept("!"):
            return Not(self._unary())
        return self._primary()

    def _primary(self):
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of expression")
        kind, text = tok
        if kind == "op" and text == "(":
            self.pos += 1
            node = self._or()
            self._expect(")")
            return node
        if kind == "number":
            self.pos += 1
            return Literal(float(text) if "." in text else int(text))
        if kind == "string":
            self.pos += 1
            if text[0] == "'":
                return Literal(text[1:-1].replace("''", "'"))
            return Literal(text[1:-1].replace('\\"', '"'))
        if kind == "path":
            self.pos += 1
            lowered = text.lower()
            if lowered in ("true", "false"):
                return Literal(lowered == "true")
            if lowered == "null":
                return Literal(None)
            if self._accept("("):
                args: List[Any] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return Call(text, tuple(args))
            return Path(tuple(text.split(".")))
        raise self._error(f"Unexpected token {text!r}")


def parse(expression: str):
    return ExpressionParser(expression).parse()


def uses_status_function(node) -> bool:
    """True when the expression decides for itself how upstream outcomes gate it."""
    if isinstance(node, Call):
        if node.name.lower() in STATUS_FUNCTIONS:
            return True
        return any(uses_status_function(a) for a in node.args)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, Binary):
        return uses_status_function(node.left) or uses_status_function(node.right)
    return False


def validate(expression: str) -> None:
    """Parse only; raises ConditionSyntaxError on malformed input."""
    parse(expression)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    result: bool
    resolved_values: Dict[str, Any] = field(default_factory=dict)
    debug_info: Optional[str] = None


def _coerce_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return float("nan")


def _equal(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.lower() == right.lower()
    if left is None or right is None:
        return left is right
    if isinstance(left, str) or isinstance(right, str):
        return _coerce_number(left) == _coerce_number(right)
    return left == right


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set, frozenset)):
        return any(_equal(item, needle) for item in haystack)
    return to_text(needle).lower() in to_text(haystack).lower()


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": lambda a, b: to_text(a).lower().startswith(to_text(b).lower()),
    "endswith": lambda a, b: to_text(a).lower().endswith(to_text(b).lower()),
}


class ConditionEvaluator:
    """Evaluate expressions against a context built by ContextBuilder.

    Supports:
    - equality (case-insensitive for strings) and numeric comparisons
    - boolean operators `&&`, `||`, `!` with short-circuiting
    - status functions success(), failure(), always(), cancelled()
    - dotted path resolution: run.branch, needs.build.result, steps.vars.outputs.tag
    - missing paths resolve to null
    """

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> EvaluationResult:
        node = parse(expression)
        resolved: Dict[str, Any] = {}
        value = self._eval(node, context, resolved)
        result = truthy(value)
        logger.debug("condition %r -> %s (%s)", expression, result, resolved)
        return EvaluationResult(
            result=result,
            resolved_values=resolved,
            debug_info=f"{strip_template(expression)} -> {result}",
        )

    def value(self, expression: str, context: Mapping[str, Any]) -> Any:
        return self._eval(parse(expression), context, {})

    def _eval(self, node, context: Mapping[str, Any], resolved: Dict[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Path):
            value = self._resolve_path(node.parts, context)
            resolved[node.text] = value
            return value
        if isinstance(node, Not):
            return not truthy(self._eval(node.operand, context, resolved))
        if isinstance(node, Binary):
            if node.op == "&&":
                left = self._eval(node.left, context, resolved)
                return self._eval(node.right, context, resolved) if truthy(left) else left
            if node.op == "||":
                left = self._eval(node.left, context, resolved)
                return left if truthy(left) else self._eval(node.right, context, resolved)
            left = self._eval(node.left, context, resolved)
            right = self._eval(node.right, context, resolved)
            if node.op == "==":
                return _equal(left, right)
            if node.op == "!=":
                return not _equal(left, right)
            a, b = _coerce_number(left), _coerce_number(right)
            if node.op == "<":
                return a < b
            if node.op == "<=":
                return a <= b
            if node.op == ">":
                return a > b
            return a >= b
        if isinstance(node, Call):
            return self._call(node, context, resolved)
        raise ConditionSyntaxError(f"Cannot evaluate node {node!r}")

    def _call(self, node: Call, context: Mapping[str, Any], resolved: Dict[str, Any]) -> Any:
        name = node.name.lower()
        if name in STATUS_FUNCTIONS:
            if node.args:
                raise ConditionSyntaxError(f"{node.name}() takes no arguments")
            status = context.get("__status__", {})
            return bool(status.get(name, name == "always"))
        fn = FUNCTIONS.get(name)
        if fn is None:
            raise ConditionSyntaxError(f"Unknown function {node.name}()")
        args = [self._eval(a, context, resolved) for a in node.args]
        if len(args) != 2:
            raise ConditionSyntaxError(f"{node.name}() takes exactly 2 arguments")
        return fn(*args)

    def _resolve_path(self, parts: Sequence[str], context: Mapping[str, Any]) -> Any:
        current: Any = context
        for part in parts:
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            elif isinstance(current, OutputView):
                current = current.get(part)
            else:
                return None
        return current


# ----------------------------------------------------------------------
# Context
# ----------------------------------------------------------------------

class OutputView:
    """
    Read access to one upstream job's outputs.

    Reading fails with OutputNotReadyError unless the job succeeded, so a
    dependent can never observe a partial or stale value.
    """

    def __init__(self, job: str, store: OutputStore):
        self.job = job
        self.store = store

    def get(self, key: str) -> Any:
        return self.store.outputs(self.job).get(key)


RESULT_NAMES = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.RUNNING: "running",
    JobStatus.PENDING: "pending",
}


class ContextBuilder:
    """Build the evaluation context for one job.

    Context structure::

        {
            "run":    {"id", "pipeline", "event", "ref", "branch", "sha", "actor", "repository"},
            "github": {... same values, GitHub names: event_name, ref_name, run_id ...},
            "needs":  {"<job>": {"result": "success", "outputs": OutputView}},
            "steps":  {"<id>": {"outcome": "success", "conclusion": "success", "outputs": {...}}},
            "env":    {...},
        }
    """

    def build(
        self,
        context: RunContext,
        needs: Mapping[str, Optional[JobResult]],
        outputs: OutputStore,
        *,
        env: Optional[Mapping[str, str]] = None,
        steps: Optional[Mapping[str, Any]] = None,
        cancelled: bool = False,
        admit_continue_on_error: bool = True,
        upstream: Optional[Mapping[str, Optional[JobResult]]] = None,
    ) -> Dict[str, Any]:
        """`upstream` holds every ancestor's result for failure(); defaults to `needs`."""
        run_ctx = {
            "id": context.run_id,
            "pipeline": context.pipeline,
            "event": context.event,
            "ref": context.ref,
            "branch": context.branch,
            "sha": context.sha,
            "actor": context.actor,
            "repository": context.repository,
        }
        github_ctx = {
            "run_id": context.run_id,
            "workflow": context.pipeline,
            "event_name": context.event,
            "ref": context.ref,
            "ref_name": context.branch,
            "sha": context.sha,
            "actor": context.actor,
            "repository": context.repository,
        }
        needs_ctx = {
            name: {
                "result": RESULT_NAMES[result.status] if result is not None else "pending",
                "outputs": OutputView(name, outputs),
            }
            for name, result in needs.items()
        }

        ok = all(satisfies(r, admit_continue_on_error=admit_continue_on_error) for r in needs.values())
        failed = any(
            r is not None and r.status is JobStatus.FAILED and not r.continue_on_error
            for r in (needs if upstream is None else upstream).values()
        )

        return {
            "run": run_ctx,
            "github": github_ctx,
            "needs": needs_ctx,
            "steps": dict(steps or {}),
            "env": dict(env or {}),
            "__status__": {
                "success": ok and not cancelled,
                "failure": failed,
                "cancelled": cancelled,
                "always": True,
            },
        }


def render(template: str, context: Mapping[str, Any], evaluator: Optional[ConditionEvaluator] = None) -> str:
    """Replace every `${{ expr }}` in `template` with the expression's text value."""
    if "${{" not in template:
        return template
    ev = evaluator or ConditionEvaluator()
    return _TEMPLATE.sub(lambda m: to_text(ev.value(m.group(1), context)), template)


def template_expressions(template: str) -> List[str]:
    return [m.group(1).strip() for m in _TEMPLATE.finditer(template)]
