"""
Child-process entry point for script steps.

    python -m dataflow.script_runner <manifest.json>

Each script step runs in a fresh interpreter, so nothing leaks between
executions. The manifest names the parquet inputs, the script file, the
output binding and the staging path the output must be written to.

Inside the script:
    inputs   read-only mapping of input name -> pandas DataFrame
    <name>   each input whose name is a valid identifier is also bound directly
    pd       the pandas module
The script must assign its result (a DataFrame, or anything pandas can turn
into one) to the output binding, ``output`` by default.

Scripts get a small whitelist of builtins and are checked before they run:
no imports, no dunder names or attributes, and no pandas file readers or
writers. Only the runner touches the filesystem.
"""

from pathlib import Path
from types import MappingProxyType
import ast
import builtins
import json
import keyword
import sys
import traceback

import pandas as pd

EXIT_OK = 0
EXIT_SCRIPT_FAILED = 1
EXIT_REJECTED = 2
EXIT_NO_OUTPUT = 3
EXIT_BAD_OUTPUT = 4

SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter",
        "float", "int", "isinstance", "len", "list", "map", "max", "min",
        "print", "range", "reversed", "round", "set", "sorted", "str", "sum",
        "tuple", "zip",
        "Exception", "ArithmeticError", "IndexError", "KeyError", "LookupError",
        "RuntimeError", "TypeError", "ValueError", "ZeroDivisionError",
    )
}

# pandas I/O entry points; anything named read_* is refused as well
FILE_ATTRIBUTES = frozenset({
    "to_clipboard", "to_csv", "to_excel", "to_feather", "to_hdf", "to_html",
    "to_json", "to_latex", "to_markdown", "to_orc", "to_parquet", "to_pickle",
    "to_sql", "to_stata", "to_xml",
})


class ScriptRejected(ValueError):
    pass


def check_source(source: str, filename: str = "<step>") -> ast.Module:
    """Parse a script and refuse constructs that reach outside its namespace."""
    tree = ast.parse(source, filename=filename, mode="exec")
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ScriptRejected("Scripts cannot import modules")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ScriptRejected(f"Name '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("__"):
                raise ScriptRejected(f"Attribute '{node.attr}' is not allowed")
            if node.attr.startswith("read_") or node.attr in FILE_ATTRIBUTES:
                raise ScriptRejected(f"File access through '{node.attr}' is not allowed")
    return tree


def build_namespace(inputs):
    namespace = {
        "__name__": "__pipeline_step__",
        "__builtins__": dict(SAFE_BUILTINS),
        "pd": pd,
        "inputs": MappingProxyType(inputs),
    }
    for name, frame in inputs.items():
        if name.isidentifier() and not keyword.iskeyword(name) and name not in namespace:
            namespace[name] = frame
    return namespace


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    manifest = json.loads(Path(argv[0]).read_text(encoding="utf-8"))

    source = Path(manifest["script_path"]).read_text(encoding="utf-8")
    binding = manifest.get("output_binding", "output")
    filename = manifest.get("step_name", "<step>")

    try:
        tree = check_source(source, filename)
    except SyntaxError:
        traceback.print_exc(limit=0)
        return EXIT_SCRIPT_FAILED
    except ScriptRejected as e:
        print(f"Script rejected: {e}", file=sys.stderr)
        return EXIT_REJECTED

    inputs = {name: pd.read_parquet(path) for name, path in manifest["inputs"].items()}
    namespace = build_namespace(inputs)

    try:
        exec(compile(tree, filename, "exec"), namespace)
    except Exception:
        traceback.print_exc()
        return EXIT_SCRIPT_FAILED

    if binding not in namespace:
        print(f"Script finished without binding '{binding}'", file=sys.stderr)
        return EXIT_NO_OUTPUT

    output = namespace[binding]
    if not isinstance(output, pd.DataFrame):
        try:
            output = pd.DataFrame(output)
        except (ValueError, TypeError) as e:
            print(f"'{binding}' cannot be converted to a table: {e}", file=sys.stderr)
            return EXIT_BAD_OUTPUT

    output.to_parquet(manifest["output_path"], index=False)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
