"""
Keyword checks on a single reply: explicit completion and inability.

These run after the oracle has judged whether requirements are met, to
tell "done" apart from "will do at 9" and "can't do it" apart from
"working on it".  Scheduling wording ("tomorrow", "at 9am", "will")
never counts as completion.
"""

import re

_COMPLETION_PATTERNS = [
    r"\bdone\b", r"\bdelivered\b", r"\bfinished\b", r"\bcompleted?\b",
    r"\bfixed\b", r"\bresolved\b", r"\bsorted\b", r"\ball set\b",
    r"\bdropped (?:it |them )?off\b", r"\bhanded over\b",
    r"\bc'est fait\b", r"\blivr[ée]e?s?\b", r"\btermin[ée]e?s?\b", r"\br[ée]par[ée]e?s?\b",
]

_SCHEDULING_PATTERNS = [
    r"\bwill\b", r"\bi'll\b", r"\bgoing to\b", r"\bgonna\b",
    r"\btomorrow\b", r"\btonight\b", r"\blater\b", r"\bsoon\b",
    r"\bby \d{1,2}(?::\d{2})?\s*(?:am|pm)?\b",
    r"\bdemain\b", r"\bce soir\b", r"\bplus tard\b", r"\bvais\b",
]

_INABILITY_PATTERNS = [
    r"\bcan'?t\b", r"\bcannot\b", r"\bunable\b", r"\bnot able\b",
    r"\bnot possible\b", r"\bimpossible\b", r"\bunavailable\b",
    r"\bnot available\b", r"\bno way\b", r"\bwon'?t be able\b",
    r"\bblocked\b", r"\bneed approval\b", r"\bsick\b",
    r"\bne peux pas\b", r"\bpas possible\b", r"\bindisponible\b",
]

# Negations that turn a completion word into its opposite ("not done yet").
_NEGATED_COMPLETION = re.compile(
    r"\b(?:not|isn'?t|wasn'?t|haven'?t|hasn'?t|pas)\s+(?:yet\s+)?"
    r"(?:been\s+)?(?:done|delivered|finished|completed?|fixed|resolved)\b"
)


def _match_any(text: str, patterns: list[str]) -> bool:
    lower = text.lower()
    return any(re.search(p, lower) for p in patterns)


def is_explicit_completion(text: str) -> bool:
    """Reply states the work has been carried out, not merely planned."""
    lower = text.lower()
    if _NEGATED_COMPLETION.search(lower):
        return False
    if not _match_any(lower, _COMPLETION_PATTERNS):
        return False
    # "I'll be done at 9" is a schedule, not a completion
    return not _match_any(lower, _SCHEDULING_PATTERNS)


def indicates_inability(text: str) -> bool:
    """Reply says the responder cannot carry the request out."""
    return _match_any(text, _INABILITY_PATTERNS)
