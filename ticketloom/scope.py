"""
TICKETLOOM Scope Validator

Classifies changed files against a ticket's allowed/forbidden glob patterns
and, on violation, proposes the minimal widening of allowed_paths that would
have let the change through.

Pattern syntax:
  **/  zero or more directories
  **   anything, including '/'
  *    anything except '/'
  ?    one character except '/'
An empty allowed list means every path is allowed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache

from loguru import logger

from ticketloom.state import ScopeViolation

HALLUCINATED_PREFIX = "hallucinated:"
MAX_EXPANSIONS = 10


def normalize_path(file_path: str) -> str:
    path = file_path.replace("\\", "/")
    path = re.sub(r"^\./", "", path)
    path = re.sub(r"/+", "/", path)
    return re.sub(r"/$", "", path)


def detect_hallucinated_path(file_path: str) -> str | None:
    """Return a reason if the path looks invented (e.g. 'src/src/a.py'), else None."""
    segments = [s for s in normalize_path(file_path).split("/") if s]
    for a, b in zip(segments, segments[1:]):
        if a == b:
            return f"Repeated path segment: '{a}/{a}'"
    if "//" in file_path.replace("\\", "/"):
        return "Contains double slashes"
    return None


@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    pattern = pattern.replace("\\", "/")
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def matches_pattern(file_path: str, pattern: str) -> bool:
    return bool(_glob_regex(pattern).match(file_path.replace("\\", "/")))


def check_violations(
    changed_files: list[str],
    allowed_paths: list[str],
    forbidden_paths: list[str],
) -> list[ScopeViolation]:
    """
    Forbidden patterns take precedence over everything else, hallucination
    checks included. Hallucinated paths are reported as not_in_allowed with a 'hallucinated:' pattern so the
    expander can refuse them.
    """
    violations: list[ScopeViolation] = []

    for file in changed_files:
        normalized = normalize_path(file)

        forbidden = next((p for p in forbidden_paths if matches_pattern(normalized, p)), None)
        if forbidden is not None:
            violations.append(ScopeViolation(file=file, violation="in_forbidden", pattern=forbidden))
            continue

        reason = detect_hallucinated_path(file)
        if reason:
            logger.warning(f"[SCOPE] Hallucinated path '{file}': {reason}")
            violations.append(ScopeViolation(
                file=file, violation="not_in_allowed", pattern=f"{HALLUCINATED_PREFIX} {reason}",
            ))
            continue

        if not allowed_paths:
            continue

        allowed = any(matches_pattern(normalized, p) for p in allowed_paths)
        # Untracked directories show up as 'dir/'; accept them if an allowed pattern lives below
        if not allowed and file.endswith("/"):
            allowed = any(p.startswith(normalized + "/") for p in allowed_paths)
        if not allowed:
            violations.append(ScopeViolation(file=file, violation="not_in_allowed"))

    return violations


@dataclass
class ExpansionResult:
    can_expand: bool
    expanded_paths: list[str]
    added_paths: list[str] = field(default_factory=list)
    reason: str | None = None


def analyze_expansion(
    violations: list[ScopeViolation],
    current_allowed: list[str],
    retry_count: int,
    max_retries: int,
    max_expansions: int = MAX_EXPANSIONS,
) -> ExpansionResult:
    """Propose the smallest allowed_paths widening that would clear the violations."""

    def refuse(reason: str) -> ExpansionResult:
        return ExpansionResult(can_expand=False, expanded_paths=list(current_allowed), reason=reason)

    if retry_count >= max_retries:
        return refuse(f"Max retries exceeded ({retry_count}/{max_retries})")

    forbidden = [v for v in violations if v.violation == "in_forbidden"]
    if forbidden:
        return refuse(f"Cannot expand: {len(forbidden)} file(s) match forbidden paths")

    hallucinated = [v for v in violations if (v.pattern or "").startswith(HALLUCINATED_PREFIX)]
    if hallucinated:
        return refuse(f"Cannot expand: {len(hallucinated)} hallucinated path(s) detected")

    to_add: list[str] = []
    for v in violations:
        path = normalize_path(v.file)
        if path and path not in to_add and path not in current_allowed:
            to_add.append(path)

    if not to_add:
        return refuse("Cannot expand: no candidate paths")
    if len(to_add) > max_expansions:
        return refuse(f"Cannot expand: {len(to_add)} files need expansion (max: {max_expansions})")

    return ExpansionResult(
        can_expand=True,
        expanded_paths=list(dict.fromkeys([*current_allowed, *to_add])),
        added_paths=to_add,
    )


_PORCELAIN_RE = re.compile(r"^..\s+(.+?)(?:\s+->\s+(.+))?$")


def _unquote(path: str) -> str:
    # Status is read with core.quotePath=false, so only quotes, backslashes and control chars are escaped
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        return re.sub(r"\\(.)", lambda m: {"t": "\t", "n": "\n"}.get(m.group(1), m.group(1)), path[1:-1])
    return path


def parse_changed_files(status_output: str) -> list[str]:
    """Parse `git status --porcelain` output. Renames report the destination."""
    files: list[str] = []
    for line in status_output.splitlines():
        if not line.strip():
            continue
        match = _PORCELAIN_RE.match(line)
        if not match:
            continue
        files.append(_unquote(match.group(2) or match.group(1)))
    return files
