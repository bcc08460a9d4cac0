"""Local deterministic agent for CLI backend integration tests and smoke runs.

Reads the prompt from stdin and acts on directive lines found in it:

- ``@write <path> <text>`` writes ``<text>`` plus a newline to ``<path>``
  relative to the working directory.
- ``@append <path> <text>`` appends a line instead.
- ``@exit <code>`` sets the process exit status.

A conflict-resolution prompt (one carrying a fenced file body with conflict
markers) is answered with the fenced body, markers dropped and both sides
kept.  ``--keep-markers`` answers with the body unchanged instead.
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

_DIRECTIVE = re.compile(r"^@(write|append|exit)\s+(\S+)(?:\s+(.*))?$")
_ITERATION = re.compile(r"This is iteration (\d+)\.")
_CONFLICT_PROMPT_PREFIX = "Resolve git merge conflict in file:"
_MARKER_PREFIXES = ("<<<<<<<", "=======", ">>>>>>>")


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic agent behaviour."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--keep-markers", action="store_true")
    args = parser.parse_args(argv)

    prompt = (
        Path(args.prompt_file).read_text("utf-8")
        if args.prompt_file
        else sys.stdin.read()
    )

    if prompt.startswith(_CONFLICT_PROMPT_PREFIX):
        sys.stdout.write(resolve_conflict_body(prompt, keep_markers=args.keep_markers))
        return 0

    iteration = _ITERATION.search(prompt)
    print(f"echo-agent iteration={iteration.group(1) if iteration else '?'}")
    return apply_directives(prompt, cwd=Path.cwd())


def apply_directives(prompt: str, *, cwd: Path) -> int:
    exit_code = 0
    for line in prompt.splitlines():
        match = _DIRECTIVE.match(line.strip())
        if match is None:
            continue
        action, target, text = match.group(1), match.group(2), match.group(3) or ""
        if action == "exit":
            exit_code = int(target)
            continue
        path = cwd / target
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if action == "append" else "w"
        with path.open(mode, encoding="utf-8") as handle:
            handle.write(text + "\n")
        print(f"echo-agent {action} {target}")
    return exit_code


def resolve_conflict_body(prompt: str, *, keep_markers: bool = False) -> str:
    body = _fenced_body(prompt)
    if keep_markers:
        return body
    return "".join(
        line for line in body.splitlines(keepends=True) if not line.startswith(_MARKER_PREFIXES)
    )


def _fenced_body(prompt: str) -> str:
    lines = prompt.splitlines(keepends=True)
    fences = [index for index, line in enumerate(lines) if line.startswith("```")]
    if len(fences) < 2:
        return ""
    return "".join(lines[fences[0] + 1 : fences[1]])


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
