from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from triagefix.agents.code_reading import STANDARD_CY_COMMANDS
from triagefix.models import CodeChange


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SyntaxCheckResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


_RISKY_PATTERNS = (
    (re.compile(r"cy\.wait\(\d{4,}\)"), "Avoid long waits (>3000ms)"),
    (re.compile(r"force:\s*true"), "Using force:true may hide real issues"),
    (re.compile(r"\.\.\."), "Spread operator might cause issues"),
    (re.compile(r"eval\("), "eval() is dangerous and should be avoided"),
)

# Chainable commands that may also appear right after `cy.` in generated code.
KNOWN_CY_COMMANDS = STANDARD_CY_COMMANDS | frozenset(
    {"parent", "children", "first", "last", "eq", "filter", "not", "each", "closest", "siblings", "next", "prev"}
)


def _normalize_ws(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def fuzzy_match(actual: str, expected: str) -> bool:
    return _normalize_ws(expected) in _normalize_ws(actual)


def _target_window(lines: Sequence[str], change: CodeChange) -> str:
    """The file lines a change targets: one line, or as many as old_code spans."""
    span = max(1, len(change.old_code.split("\n")))
    return "\n".join(lines[change.line - 1 : change.line - 1 + span])


def _best_practice_warnings(change: CodeChange) -> List[str]:
    new = change.new_code
    out: List[str] = []
    if re.search(r"""cy\.get\(['"]body['"]\)""", new):
        out.append(f"Line {change.line}: Avoid selecting 'body', be more specific")
    if re.search(r"cy\.wait\(", new) and not re.search(r"""cy\.wait\(['"]@""", new):
        out.append(f"Line {change.line}: Prefer cy.wait('@alias') over arbitrary waits")
    if re.search(r"""\.should\(['"]exist['"]\)\.should\(""", new):
        out.append(f"Line {change.line}: Chaining multiple assertions can be combined")
    if "class=" in change.old_code and "data-test" not in new:
        out.append(f"Line {change.line}: Consider using data-testid instead of class selectors")
    return out


def validate_changes(changes: Sequence[CodeChange], file_content: str) -> ValidationResult:
    """
    Line-scoped pre-flight check of a change set against one file.

    Pure: the same inputs always give the same errors and warnings.
    """
    errors: List[str] = []
    warnings: List[str] = []
    if not changes:
        return ValidationResult(valid=False, errors=["No changes proposed"])

    lines = file_content.split("\n")
    for change in changes:
        if change.line < 1 or change.line > len(lines):
            errors.append(f"Invalid line number {change.line} (file has {len(lines)} lines)")
            continue

        actual = _target_window(lines, change)
        if not fuzzy_match(actual, change.old_code):
            errors.append(
                f"Line {change.line} does not match expected content.\n"
                f'Expected: "{change.old_code}"\n'
                f'Actual: "{actual}"'
            )
        if not change.new_code.strip():
            warnings.append(f"Line {change.line}: Replacing with empty content")
        for pattern, message in _RISKY_PATTERNS:
            if pattern.search(change.new_code):
                warnings.append(f"Line {change.line}: {message}")
        warnings.extend(_best_practice_warnings(change))

    counts = Counter(c.line for c in changes)
    duplicates = sorted(line for line, n in counts.items() if n > 1)
    if duplicates:
        errors.append("Multiple changes to the same line(s): " + ", ".join(str(d) for d in duplicates))

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def apply_changes(changes: Sequence[CodeChange], file_content: str) -> str:
    """
    Line-indexed substitution, highest line first so earlier line numbers stay valid.

    Inside the targeted window old_code is replaced literally when present;
    otherwise the whole window is replaced by new_code. Out-of-range changes
    are ignored.
    """
    lines = file_content.split("\n")
    for change in sorted(changes, key=lambda c: c.line, reverse=True):
        if change.line < 1 or change.line > len(lines):
            continue
        span = max(1, len(change.old_code.split("\n")))
        start, end = change.line - 1, min(len(lines), change.line - 1 + span)
        window = "\n".join(lines[start:end])
        replaced = window.replace(change.old_code, change.new_code, 1) if change.old_code in window else change.new_code
        lines[start:end] = replaced.split("\n")
    return "\n".join(lines)


# ---- syntax heuristics


_LITERALS = re.compile(
    r"""//[^\n]*|/\*[\s\S]*?\*/|"(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*'|`(?:\\.|[^`\\])*`"""
)


def strip_strings_and_comments(content: str) -> str:
    """Drop comments and empty every closed string literal, scanning left to right."""

    def _blank(m: "re.Match[str]") -> str:
        tok = m.group(0)
        return "" if tok.startswith("/") else tok[0] * 2

    return _LITERALS.sub(_blank, content)


def check_balanced_delimiters(content: str) -> Optional[str]:
    pairs = {"{": "}", "[": "]", "(": ")"}
    closing = set(pairs.values())
    stack: List[str] = []
    for ch in strip_strings_and_comments(content):
        if ch in pairs:
            stack.append(ch)
        elif ch in closing:
            if not stack or pairs[stack.pop()] != ch:
                return f"Unmatched {ch}"
    if stack:
        return f"Unclosed {stack[-1]}"
    return None


def check_balanced_quotes(content: str) -> Optional[str]:
    cleaned = strip_strings_and_comments(content)
    for quote in ('"', "'", "`"):
        if cleaned.count(quote) % 2:
            return f"Unbalanced {quote} quotes"
    return None


def check_cypress_commands(content: str, custom_commands: Iterable[str] = ()) -> Optional[str]:
    registered = set(custom_commands)
    registered.update(re.findall(r"""Cypress\.Commands\.add\(\s*['"](\w+)['"]""", content))
    for m in re.finditer(r"cy\.([a-zA-Z]+)\(", content):
        cmd = m.group(1)
        if cmd not in KNOWN_CY_COMMANDS and cmd not in registered:
            return f"Unknown Cypress command: cy.{cmd}()"
    return None


def check_cypress_chains(content: str) -> Optional[str]:
    if re.search(r"cy\.[a-zA-Z]+\([^)]*\)\.\s*$", content, flags=re.MULTILINE):
        return "Incomplete Cypress command chain detected"
    if re.search(r"(?<!\.)\.\.(?!\.)\s*[a-zA-Z]", strip_strings_and_comments(content)):
        return "Double dots in chain detected"
    return None


def validate_syntax(content: str, *, custom_commands: Iterable[str] = ()) -> SyntaxCheckResult:
    checks = (
        ("Balanced braces", check_balanced_delimiters(content)),
        ("Balanced quotes", check_balanced_quotes(content)),
        ("Valid Cypress commands", check_cypress_commands(content, custom_commands)),
        ("No broken chains", check_cypress_chains(content)),
    )
    errors = [f"{name}: {err}" for name, err in checks if err]
    return SyntaxCheckResult(valid=not errors, errors=errors)
