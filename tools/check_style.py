#!/usr/bin/env python3
"""Check for banned Python constructions in kubeguard source.

Banned constructions:

    Construction          Reason                            Use instead
    --------------------  --------------------------------  --------------------------
    import shlex          shell parsing goes through        bashlex via core.bash
    from shlex import     bashlex, quoting via bash_quote   bash_quote / bash_join
    yaml.load(...)        can construct arbitrary objects   yaml.safe_load
    shell=True            command strings get re-parsed     argv lists, or sh -c
"""

import ast
import os
import sys

BANNED_MODULES = frozenset({"shlex"})
BANNED_YAML_CALLS = frozenset({"load", "load_all", "unsafe_load", "full_load"})


def find_python_files(directory):
    """Find all .py files recursively."""
    result = []
    for root, _dirs, files in os.walk(directory):
        for f in files:
            if f.endswith(".py"):
                result.append(os.path.join(root, f))
    result.sort()
    return result


def _is_yaml_load(node):
    func = node.func
    return (
        isinstance(func, ast.Attribute)
        and func.attr in BANNED_YAML_CALLS
        and isinstance(func.value, ast.Name)
        and func.value.id == "yaml"
    )


def check_source(source, filepath="<string>"):
    tree = ast.parse(source, filepath)
    errors = []

    for node in ast.walk(tree):
        lineno = getattr(node, "lineno", 0)

        # import shlex
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name in BANNED_MODULES:
                    errors.append((lineno, f"import {alias.name}: banned, use core.bash"))

        # from shlex import ...
        if isinstance(node, ast.ImportFrom):
            if node.module in BANNED_MODULES:
                errors.append((lineno, f"from {node.module} import: banned, use core.bash"))

        if isinstance(node, ast.Call):
            if _is_yaml_load(node):
                errors.append((lineno, f"yaml.{node.func.attr}: banned, use yaml.safe_load"))
            for keyword in node.keywords:
                if (
                    keyword.arg == "shell"
                    and isinstance(keyword.value, ast.Constant)
                    and keyword.value.value is True
                ):
                    errors.append((lineno, "shell=True: banned, pass an argv list"))

    return errors


def check_file(filepath):
    with open(filepath, encoding="utf-8") as f:
        source = f.read()
    return check_source(source, filepath)


def main():
    src_dir = "src"
    if len(sys.argv) > 1:
        src_dir = sys.argv[1]

    if not os.path.isdir(src_dir):
        print(f"Directory not found: {src_dir}")
        sys.exit(1)

    files = find_python_files(src_dir)
    if not files:
        print(f"No Python files found in: {src_dir}")
        sys.exit(1)

    all_errors = []
    for filepath in files:
        try:
            errors = check_file(filepath)
            for lineno, description in errors:
                all_errors.append((filepath, lineno, description))
        except SyntaxError as e:
            print(f"Syntax error in {filepath}: {e}")
            sys.exit(1)

    if not all_errors:
        sys.exit(0)

    print(f"Found {len(all_errors)} banned construction(s):")
    for filepath, lineno, description in sorted(all_errors):
        print(f"  {filepath}:{lineno}: {description}")
    sys.exit(1)


if __name__ == "__main__":
    main()
