"""Static checks and restricted builtins for scraper scripts.

Scripts are a restricted subset of Python: no imports, no access to
dunder or private names, and no attribute hops that lead from a
capability object back to interpreter internals (frames, code objects).
"""

from __future__ import annotations

import ast
import builtins
import hashlib
from functools import lru_cache
from types import CodeType

from scrapearr.domain.exceptions import ScriptValidationError

ENTRYPOINT = "get_streams"

_SAFE_BUILTIN_NAMES: tuple[str, ...] = (
    "abs",
    "all",
    "any",
    "bool",
    "bytes",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "hex",
    "int",
    "isinstance",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    # Exceptions scripts commonly raise or catch
    "Exception",
    "ValueError",
    "KeyError",
    "IndexError",
    "TypeError",
    "RuntimeError",
    "LookupError",
    "StopIteration",
    "ZeroDivisionError",
)

SAFE_BUILTINS: dict[str, object] = {
    name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES
}

# Attribute names that reach frames, code objects or format-string
# attribute traversal without needing an underscore.
_BLOCKED_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "ag_code",
        "ag_frame",
        "cr_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "format",
        "format_map",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "cr_await",
        "tb_frame",
        "tb_next",
    }
)


class _ScriptChecker(ast.NodeVisitor):
    def __init__(self) -> None:
        self.errors: list[str] = []

    def _fail(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", "?")
        self.errors.append(f"line {line}: {message}")

    def visit_Import(self, node: ast.Import) -> None:
        self._fail(node, "import statements are not allowed")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._fail(node, "import statements are not allowed")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._fail(node, f"name '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._fail(node, f"private attribute '{node.attr}' is not allowed")
        elif node.attr in _BLOCKED_ATTRIBUTES:
            self._fail(node, f"attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def _check_def_name(self, node: ast.AST, name: str) -> None:
        if name.startswith("__"):
            self._fail(node, f"definition '{name}' is not allowed")

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_def_name(node, node.name)
        self.generic_visit(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._check_def_name(node, node.name)
        self.generic_visit(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._fail(node, "class definitions are not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        self._fail(node, "global statements are not allowed")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self._fail(node, "nonlocal statements are not allowed")


def _has_async_entrypoint(tree: ast.Module) -> bool:
    return any(
        isinstance(node, ast.AsyncFunctionDef) and node.name == ENTRYPOINT
        for node in tree.body
    )


def script_digest(source: str) -> str:
    """Short sha256 of a script, used to identify code in logs."""
    return hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]


@lru_cache(maxsize=256)
def compile_script(source: str, filename: str = "<scraper>") -> CodeType:
    """Validate *source* and compile it.

    Raises:
        ScriptValidationError: syntax errors, forbidden constructs, or a
            missing ``async def get_streams(query, ctx)``.
    """
    try:
        tree = ast.parse(source, filename=filename, mode="exec")
    except SyntaxError as e:
        raise ScriptValidationError(
            f"{filename}: syntax error at line {e.lineno}: {e.msg}"
        ) from e

    checker = _ScriptChecker()
    checker.visit(tree)
    if checker.errors:
        raise ScriptValidationError(f"{filename}: " + "; ".join(checker.errors))

    if not _has_async_entrypoint(tree):
        raise ScriptValidationError(
            f"{filename}: script must define 'async def {ENTRYPOINT}(query, ctx)'"
        )

    return compile(tree, filename, "exec")
