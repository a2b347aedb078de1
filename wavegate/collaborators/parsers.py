"""Parser capability: structural representations of source files.

``PythonAstParser`` uses the standard ``ast`` module.  Other languages go
through ``HeuristicParser``, a line-oriented regex scanner that is
shallow: it recovers function signatures, statement-level
calls and branch/loop counts, which is all the Behavior Verifier and the
Compatibility Layer Generator consume.
"""

from __future__ import annotations

import ast
import logging
import re
from collections.abc import Iterator

from wavegate.models.verification import FunctionShape, StructuralRepresentation

logger = logging.getLogger(__name__)


class ParseError(ValueError):
    """Raised when content cannot be parsed at all."""


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)


def _iter_own(node: ast.AST) -> Iterator[ast.AST]:
    """Walk *node*'s body without descending into nested scopes."""
    stack = list(ast.iter_child_nodes(node))
    while stack:
        child = stack.pop()
        yield child
        if not isinstance(child, _SCOPE_NODES):
            stack.extend(ast.iter_child_nodes(child))


def _dotted(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted(node.value)
        return f"{base}.{node.attr}" if base else node.attr
    if isinstance(node, ast.Call):
        return _dotted(node.func)
    return ""


def _statement_calls(body: list[ast.stmt] | ast.AST) -> list[str]:
    """Names of calls whose result is discarded, i.e. made for effect."""
    nodes = _iter_own(body) if isinstance(body, ast.AST) else body
    calls: list[str] = []
    for node in nodes:
        if not isinstance(node, ast.Expr):
            continue
        value = node.value.value if isinstance(node.value, ast.Await) else node.value
        if isinstance(value, ast.Call):
            name = _dotted(value.func)
            if name:
                calls.append(name)
    return sorted(calls)


def _function_shape(qualname: str, fn: ast.FunctionDef | ast.AsyncFunctionDef) -> FunctionShape:
    args = fn.args
    positional = [*args.posonlyargs, *args.args]
    required_positional = len(positional) - len(args.defaults)
    required_kwonly = sum(1 for default in args.kw_defaults if default is None)

    own = list(_iter_own(fn))
    if any(isinstance(n, (ast.Yield, ast.YieldFrom)) for n in own):
        category = "generator"
    elif any(
        isinstance(n, ast.Return)
        and n.value is not None
        and not (isinstance(n.value, ast.Constant) and n.value.value is None)
        for n in own
    ):
        category = "value"
    else:
        category = "none"

    branches = sum(
        1 for n in own if isinstance(n, (ast.If, ast.IfExp, ast.ExceptHandler, ast.match_case))
    )
    loops = sum(
        1 for n in own if isinstance(n, (ast.For, ast.AsyncFor, ast.While, ast.comprehension))
    )

    return FunctionShape(
        name=qualname,
        params=[a.arg for a in positional] + [a.arg for a in args.kwonlyargs],
        required_arity=required_positional + required_kwonly,
        has_varargs=args.vararg is not None or args.kwarg is not None,
        return_category=category,
        branch_count=branches,
        loop_count=loops,
        side_effect_calls=_statement_calls(fn),
        line=fn.lineno,
    )


class PythonAstParser:
    """Structural parser for Python built on ``ast``.

    Non-Python content is delegated to *fallback* (a ``HeuristicParser``
    unless given).
    """

    def __init__(self, fallback: HeuristicParser | None = None) -> None:
        self._fallback = fallback or HeuristicParser()

    def parse(self, content: str, language: str) -> StructuralRepresentation:
        if language != "python":
            return self._fallback.parse(content, language)
        try:
            tree = ast.parse(content)
        except SyntaxError as exc:
            raise ParseError(f"line {exc.lineno}: {exc.msg}") from exc

        functions: dict[str, FunctionShape] = {}
        symbols: list[str] = []

        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                functions[node.name] = _function_shape(node.name, node)
                symbols.append(node.name)
            elif isinstance(node, ast.ClassDef):
                symbols.append(node.name)
                for item in node.body:
                    if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                        qualname = f"{node.name}.{item.name}"
                        functions[qualname] = _function_shape(qualname, item)
            elif isinstance(node, (ast.Assign, ast.AnnAssign)):
                targets = node.targets if isinstance(node, ast.Assign) else [node.target]
                symbols.extend(t.id for t in targets if isinstance(t, ast.Name))

        module_calls = _statement_calls(
            [n for n in tree.body if not isinstance(n, _SCOPE_NODES)]
        )
        return StructuralRepresentation(
            language="python",
            functions=functions,
            module_side_effect_calls=module_calls,
            symbols=sorted(set(symbols)),
        )


# ---------------------------------------------------------------------------
# Everything else
# ---------------------------------------------------------------------------

_SIGNATURES = [
    # function foo(a, b) / async function* foo(...)
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*(\*)?\s*(\w+)\s*\(([^)]*)\)"),
    # const foo = (a, b) => / const foo = async (a) =>
    re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?()\(([^)]*)\)\s*(?::[^=]+)?=>"),
    # func foo(a int) / fn foo(a: i32) / fun foo(a: Int) / def foo(a)
    re.compile(r"^\s*(?:pub\s+)?(?:func|fn|fun|def)\s+(?:\([^)]*\)\s*)?(\w+)\s*()\(([^)]*)\)"),
    # public static int foo(int a) {  (Java, C#, Kotlin-like, TS class methods)
    re.compile(
        r"^\s*(?:(?:public|private|protected|internal|static|final|async|override|virtual|abstract)\s+)+"
        r"(?:[\w<>\[\],.?]+\s+)?(\w+)\s*()\(([^)]*)\)\s*(?::\s*[\w<>\[\], |.?]+)?\s*\{?\s*$"
    ),
]

_EXPORTS = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:function|class|const|let|var|interface|type|enum)\s*\*?\s*(\w+)",
    re.MULTILINE,
)
_BRANCH = re.compile(r"\b(if|elif|elsif|case|catch|except|when)\b")
_LOOP = re.compile(r"\b(for|foreach|while|loop)\b")
_STATEMENT_CALL = re.compile(r"^\s*(?:await\s+)?([A-Za-z_$][\w$.]*)\s*\(.*\)\s*;?\s*$")
_RETURN_VALUE = re.compile(r"\breturn\s+(?!;|None\b|null\b|undefined\b)\S")
_KEYWORDS = frozenset({"if", "for", "while", "switch", "catch", "return", "function", "elif", "else"})


def _split_params(raw: str) -> list[str]:
    params = []
    depth = 0
    current = ""
    for ch in raw:
        if ch in "<([{":
            depth += 1
        elif ch in ">)]}":
            depth -= 1
        if ch == "," and depth == 0:
            params.append(current.strip())
            current = ""
        else:
            current += ch
    if current.strip():
        params.append(current.strip())
    return params


def _param_name(param: str) -> str:
    param = param.split("=", 1)[0].strip().lstrip(".*&")
    if ":" in param:
        return param.split(":", 1)[0].strip().rstrip("?")
    words = re.findall(r"[\w$]+", param)
    return words[-1] if words else param


class HeuristicParser:
    """Regex-based structural parser for languages without an AST binding."""

    def parse(self, content: str, language: str) -> StructuralRepresentation:
        lines = content.splitlines()
        starts: list[tuple[int, str, bool, list[str]]] = []
        for lineno, line in enumerate(lines):
            for pattern in _SIGNATURES:
                match = pattern.match(line)
                if not match:
                    continue
                if pattern is _SIGNATURES[0]:
                    star, name, raw = match.groups()
                else:
                    name, star, raw = match.groups()
                if name in _KEYWORDS:
                    continue
                starts.append((lineno, name, bool(star), _split_params(raw)))
                break

        functions: dict[str, FunctionShape] = {}
        first_body_line = starts[0][0] if starts else len(lines)
        for index, (lineno, name, is_generator, params) in enumerate(starts):
            end = starts[index + 1][0] if index + 1 < len(starts) else len(lines)
            body = lines[lineno + 1:end]
            text = "\n".join(body)
            if is_generator or re.search(r"\byield\b", text):
                category = "generator"
            elif _RETURN_VALUE.search(text):
                category = "value"
            else:
                category = "none"
            required = [p for p in params if "=" not in p and "?" not in p.split(":", 1)[0]]
            functions[name] = FunctionShape(
                name=name,
                params=[_param_name(p) for p in params],
                required_arity=len([p for p in required if not p.lstrip().startswith("...")]),
                has_varargs=any(p.lstrip().startswith(("...", "*")) for p in params),
                return_category=category,
                branch_count=len(_BRANCH.findall(text)),
                loop_count=len(_LOOP.findall(text)),
                side_effect_calls=sorted(
                    m.group(1) for m in map(_STATEMENT_CALL.match, body)
                    if m and m.group(1).split(".")[0] not in _KEYWORDS
                ),
                line=lineno + 1,
            )

        module_calls = sorted(
            m.group(1) for m in map(_STATEMENT_CALL.match, lines[:first_body_line])
            if m and m.group(1).split(".")[0] not in _KEYWORDS
        )
        symbols = set(_EXPORTS.findall(content)) | set(functions)
        return StructuralRepresentation(
            language=language,
            functions=functions,
            module_side_effect_calls=module_calls,
            symbols=sorted(symbols),
        )
