"""
Restricted expression language used by rule predicates and message templates.

Expressions are a safe subset of Python evaluated by walking the AST: boolean
logic, arithmetic, comparisons, attribute access, indexing, comprehensions,
literals and calls to whitelisted helpers. Templates embed expressions as
``{{ expr }}``.
"""

from __future__ import annotations
import ast
import functools
import operator
import re
from typing import Any, Callable, Dict, List, Mapping, Optional

from firmlint.errors import ExpressionEvalError


def _mark_safe_callable(func: Any) -> Any:
    setattr(func, "_firmlint_safe_callable", True)
    return func


def _wrap_safe_callable(func: Any) -> Any:
    @functools.wraps(func)
    def _safe_wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return _mark_safe_callable(_safe_wrapper)


def _wrap_dynamic_callable(func: Any) -> Any:
    def _safe_wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return _mark_safe_callable(_safe_wrapper)


def _matches(pattern: str, text: Any) -> bool:
    if text is None:
        return False
    return re.search(pattern, str(text)) is not None


def _startswith(text: Any, prefix: Any) -> bool:
    if text is None:
        return False
    return str(text).startswith(prefix)


SAFE_CALLABLES: Dict[str, Any] = {
    "len": _wrap_safe_callable(len),
    "any": _wrap_safe_callable(any),
    "all": _wrap_safe_callable(all),
    "sum": _wrap_safe_callable(sum),
    "min": _wrap_safe_callable(min),
    "max": _wrap_safe_callable(max),
    "sorted": _wrap_safe_callable(sorted),
    "abs": _wrap_safe_callable(abs),
    "matches": _wrap_safe_callable(_matches),
    "startswith": _wrap_safe_callable(_startswith),
}

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class CompiledExpression:
    """An expression parsed once; evaluation only walks the cached tree."""

    __slots__ = ("source", "_tree")

    def __init__(self, source: str, tree: Optional[ast.AST]) -> None:
        self.source = source
        self._tree = tree

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        if self._tree is None:
            return True
        scope = dict(SAFE_CALLABLES)
        scope.update(env)
        return _INTERPRETER.eval_node(self._tree, scope)

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


class CompiledTemplate:
    """A ``{{ expr }}`` template with every placeholder compiled up front."""

    __slots__ = ("source", "_parts")

    def __init__(self, source: str) -> None:
        self.source = source
        self._parts: List[Any] = []
        position = 0
        for match in TEMPLATE_PATTERN.finditer(source):
            if match.start() > position:
                self._parts.append(source[position:match.start()])
            self._parts.append(compile_expression(match.group(1)))
            position = match.end()
        if position < len(source):
            self._parts.append(source[position:])

    @property
    def expressions(self) -> List[CompiledExpression]:
        return [part for part in self._parts if isinstance(part, CompiledExpression)]

    def render(self, env: Mapping[str, Any]) -> str:
        out = []
        for part in self._parts:
            if isinstance(part, CompiledExpression):
                value = part.evaluate(env)
                out.append("" if value is None else str(value))
            else:
                out.append(part)
        return "".join(out)


def compile_expression(source: Optional[str]) -> CompiledExpression:
    """
    Parse ``source`` and reject constructs the interpreter would refuse at
    evaluation time, so broken rules fail when the catalog loads.
    """
    text = (source or "").strip()
    if not text:
        return CompiledExpression("", None)
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise ExpressionEvalError(f"invalid expression '{text}': {exc.msg}") from exc
    _INTERPRETER.check(tree.body)
    return CompiledExpression(text, tree.body)


def compile_template(source: Optional[str]) -> CompiledTemplate:
    return CompiledTemplate(source or "")


class _SafeExpressionInterpreter:
    """
    Evaluates a restricted subset of Python expressions by walking the AST.
    Supports boolean logic, arithmetic, comparisons, attribute access, indexing,
    safe function calls, and literals/containers.
    """

    _BIN_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
        ast.BitAnd: operator.and_,
        ast.BitOr: operator.or_,
        ast.BitXor: operator.xor,
        ast.LShift: operator.lshift,
        ast.RShift: operator.rshift,
    }
    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
        ast.Invert: operator.invert,
    }
    _COMPARISONS: Dict[type, Callable[[Any, Any], bool]] = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.In: lambda left, right: left in right,
        ast.NotIn: lambda left, right: left not in right,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }
    _ALLOWED_NODES = (
        ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.BinOp, ast.Compare, ast.IfExp,
        ast.Attribute, ast.Name, ast.Load, ast.Store, ast.Constant, ast.GeneratorExp,
        ast.ListComp, ast.SetComp, ast.DictComp, ast.comprehension, ast.Call, ast.keyword,
        ast.Subscript, ast.Slice, ast.List, ast.Tuple, ast.Set, ast.Dict,
    ) + tuple(_BIN_OPS) + tuple(_UNARY_OPS) + tuple(_COMPARISONS)

    def check(self, tree: ast.AST) -> None:
        for node in ast.walk(tree):
            if not isinstance(node, self._ALLOWED_NODES):
                raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ExpressionEvalError("access to private attributes is not allowed")
            if isinstance(node, ast.Name) and node.id.startswith("_"):
                raise ExpressionEvalError("access to private names is not allowed")

    def eval_node(self, node: ast.AST, env: Dict[str, Any]) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = result and bool(self.eval_node(value, env))
                    if not result:
                        break
                return result
            if isinstance(node.op, ast.Or):
                result = False
                for value in node.values:
                    result = result or bool(self.eval_node(value, env))
                    if result:
                        break
                return result
            raise ExpressionEvalError("unsupported boolean operator")

        if isinstance(node, ast.UnaryOp):
            op = self._UNARY_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported unary operator")
            return op(self.eval_node(node.operand, env))

        if isinstance(node, ast.BinOp):
            op = self._BIN_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported binary operator")
            return op(self.eval_node(node.left, env), self.eval_node(node.right, env))

        if isinstance(node, ast.Compare):
            left = self.eval_node(node.left, env)
            for operator_node, comparator in zip(node.ops, node.comparators):
                right = self.eval_node(comparator, env)
                compare = self._COMPARISONS.get(type(operator_node))
                if compare is None:
                    raise ExpressionEvalError("unsupported comparison operator")
                if not compare(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            branch = node.body if self.eval_node(node.test, env) else node.orelse
            return self.eval_node(branch, env)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionEvalError("access to private attributes is not allowed")
            value = self.eval_node(node.value, env)
            if isinstance(value, Mapping) and not hasattr(value, node.attr):
                if node.attr not in value:
                    raise ExpressionEvalError(f"unknown key '{node.attr}'")
                return value[node.attr]
            try:
                attr_value = getattr(value, node.attr)
            except AttributeError as exc:
                raise ExpressionEvalError(
                    f"'{type(value).__name__}' has no attribute '{node.attr}'"
                ) from exc
            if callable(attr_value) and not getattr(attr_value, "_firmlint_safe_callable", False):
                attr_value = _wrap_dynamic_callable(attr_value)
            return attr_value

        if isinstance(node, ast.Name):
            if node.id in env:
                return env[node.id]
            if node.id in ("True", "False", "None"):
                return {"True": True, "False": False, "None": None}[node.id]
            raise ExpressionEvalError(f"unknown identifier '{node.id}'")

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.GeneratorExp):
            return self._comprehension_values(node.generators, env, node.elt)

        if isinstance(node, ast.ListComp):
            return list(self._comprehension_values(node.generators, env, node.elt))

        if isinstance(node, ast.SetComp):
            return set(self._comprehension_values(node.generators, env, node.elt))

        if isinstance(node, ast.DictComp):
            return dict(self._comprehension_items(node.generators, env, node.key, node.value))

        if isinstance(node, ast.Call):
            func_obj = self.eval_node(node.func, env)
            if not getattr(func_obj, "_firmlint_safe_callable", False):
                raise ExpressionEvalError("call to unsafe function is not allowed")
            args = [self.eval_node(arg, env) for arg in node.args]
            kwargs = {kw.arg: self.eval_node(kw.value, env) for kw in node.keywords if kw.arg}
            return func_obj(*args, **kwargs)

        if isinstance(node, ast.Subscript):
            value = self.eval_node(node.value, env)
            key = self._eval_slice(node.slice, env)
            try:
                return value[key]
            except (KeyError, IndexError, TypeError) as exc:
                raise ExpressionEvalError(f"bad subscript {key!r}: {exc}") from exc

        if isinstance(node, ast.List):
            return [self.eval_node(elt, env) for elt in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self.eval_node(elt, env) for elt in node.elts)

        if isinstance(node, ast.Set):
            return {self.eval_node(elt, env) for elt in node.elts}

        if isinstance(node, ast.Dict):
            keys = [self.eval_node(k, env) if k is not None else None for k in node.keys]
            values = [self.eval_node(v, env) for v in node.values]
            return dict(zip(keys, values))

        raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")

    def _eval_slice(self, slice_node: ast.AST, env: Dict[str, Any]) -> Any:
        if isinstance(slice_node, ast.Slice):
            lower = self.eval_node(slice_node.lower, env) if slice_node.lower else None
            upper = self.eval_node(slice_node.upper, env) if slice_node.upper else None
            step = self.eval_node(slice_node.step, env) if slice_node.step else None
            return slice(lower, upper, step)
        return self.eval_node(slice_node, env)

    def _comprehension_values(self, generators, env, value_node):
        for current_env in self._iterate_comprehension(generators, 0, dict(env)):
            yield self.eval_node(value_node, current_env)

    def _comprehension_items(self, generators, env, key_node, value_node):
        for current_env in self._iterate_comprehension(generators, 0, dict(env)):
            yield self.eval_node(key_node, current_env), self.eval_node(value_node, current_env)

    def _iterate_comprehension(self, generators, index, env):
        if index == len(generators):
            yield env
            return
        comp = generators[index]
        for item in self.eval_node(comp.iter, env):
            new_env = dict(env)
            self._assign_comprehension_target(new_env, comp.target, item)
            if all(bool(self.eval_node(condition, new_env)) for condition in comp.ifs):
                yield from self._iterate_comprehension(generators, index + 1, new_env)

    def _assign_comprehension_target(self, env: Dict[str, Any], target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            env[target.id] = value
            return
        if isinstance(target, (ast.Tuple, ast.List)):
            values = list(value) if not isinstance(value, (list, tuple)) else value
            if len(target.elts) != len(values):
                raise ExpressionEvalError("comprehension target length mismatch")
            for subtarget, subvalue in zip(target.elts, values):
                self._assign_comprehension_target(env, subtarget, subvalue)
            return
        raise ExpressionEvalError("unsupported comprehension target")


_INTERPRETER = _SafeExpressionInterpreter()


def evaluate(source: str, env: Mapping[str, Any]) -> Any:
    """Compile and evaluate ``source`` in one go."""
    return compile_expression(source).evaluate(env)


def render_template(source: str, env: Mapping[str, Any]) -> str:
    return compile_template(source).render(env)
