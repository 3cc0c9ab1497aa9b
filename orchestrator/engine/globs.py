# ============================================================================
# GLOB MATCHING
# ============================================================================
# STATUS: Core - Branch/tag/path filter matching
# PURPOSE: Glob patterns with '**', ordered '!negation' and path subsumption
# CREATED: 19 OCT 2026
# ============================================================================
"""
Glob Matching

Pattern syntax:
    *      any run of characters except '/'
    **     any run of characters including '/'
    ?      one character except '/'
    [abc]  character class ([!abc] negated); an unclosed or invalid
           class is matched literally
    !pat   (leading) negation - excludes refs matched by earlier patterns

fnmatch is not used because its '*' crosses '/' boundaries.
"""

import re
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence


def _char_class(body: str) -> Optional[str]:
    """Regex class for a glob class body, or None if it cannot be one."""
    negated = body.startswith("!")
    if negated:
        body = body[1:]
    for char in ("\\", "[", "]", "^"):
        body = body.replace(char, "\\" + char)
    text = "[" + ("^" if negated else "") + body + "]"
    try:
        re.compile(text)
    except re.error:
        return None
    return text


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> "re.Pattern[str]":
    """Translate a glob pattern into an anchored regex."""
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                i += 2
                # '**/' also matches zero directories
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] == "!":
                j += 1
            # ']' right after '[' or '[!' is a member of the class
            if j < n and pattern[j] == "]":
                j += 1
            end = pattern.find("]", j)
            char_class = _char_class(pattern[i + 1:end]) if end != -1 else None
            if char_class is None:
                out.append(re.escape(c))
            else:
                out.append(char_class)
                i = end
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def glob_match(pattern: str, value: str) -> bool:
    return bool(compile_glob(pattern).match(value))


def match_ordered(patterns: Sequence[str], value: Optional[str]) -> bool:
    """
    Evaluate an ordered include/exclude pattern list.

    Patterns are applied in order; the last pattern that matches decides.
    A list of only negations starts from 'included'.
    """
    if value is None:
        return False
    if not patterns:
        return True
    included = all(p.startswith("!") for p in patterns)
    for pattern in patterns:
        if pattern.startswith("!"):
            if included and glob_match(pattern[1:], value):
                included = False
        elif glob_match(pattern, value):
            included = True
    return included


def any_match(patterns: Iterable[str], value: str) -> bool:
    return any(glob_match(p, value) for p in patterns)


def paths_match(
    changed: Optional[List[str]],
    include: Sequence[str],
    exclude: Sequence[str],
) -> bool:
    """
    Path filter check.

    Matches when at least one changed path is selected by `include`
    (ordered, negation aware) and `exclude` does not cover every changed
    path. An unknown change set (None) always matches.
    """
    if changed is None:
        return True
    if not include and not exclude:
        return True
    if not changed:
        return False
    if include and not any(match_ordered(include, path) for path in changed):
        return False
    if exclude and all(any_match(exclude, path) for path in changed):
        return False
    return True


__all__ = ["compile_glob", "glob_match", "match_ordered", "any_match", "paths_match"]
