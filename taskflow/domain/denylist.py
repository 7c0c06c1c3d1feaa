"""
CategoryDenylist: category labels known to be classifier noise.

A classification whose category is denylisted never becomes a task.  The
list is explicit, versioned configuration: exact labels and substring
fragments, both compared case-insensitively.  Blank categories are always
noise.
"""

from dataclasses import dataclass, field

from taskflow.errors import ClassificationNoise


@dataclass(frozen=True)
class CategoryDenylist:
    version: str = "unversioned"
    exact: frozenset[str] = field(default_factory=frozenset)
    contains: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "exact", frozenset(s.strip().lower() for s in self.exact))
        object.__setattr__(self, "contains", frozenset(s.strip().lower() for s in self.contains))

    def is_denied(self, category: str | None) -> bool:
        label = (category or "").strip().lower()
        if not label:
            return True
        if label in self.exact:
            return True
        return any(fragment and fragment in label for fragment in self.contains)

    def reason(self, category: str | None) -> str:
        label = (category or "").strip().lower()
        if not label:
            return "blank category"
        if label in self.exact:
            return f"denylisted label {label!r} (denylist {self.version})"
        for fragment in sorted(self.contains):
            if fragment and fragment in label:
                return f"denylisted fragment {fragment!r} (denylist {self.version})"
        return ""

    def check(self, category: str | None) -> None:
        """Raise ClassificationNoise when *category* must not become a task."""
        reason = self.reason(category)
        if reason:
            raise ClassificationNoise(reason)

    @classmethod
    def parse(cls, text: str, version: str = "unversioned") -> "CategoryDenylist":
        """
        Build from "exact:other,contains:wifi,contains:taxi".
        Entries without a prefix are exact labels.
        """
        exact: set[str] = set()
        contains: set[str] = set()
        for raw in text.split(","):
            item = raw.strip()
            if not item:
                continue
            kind, _, value = item.partition(":")
            if not value:
                exact.add(kind)
            elif kind.strip().lower() == "contains":
                contains.add(value)
            elif kind.strip().lower() == "exact":
                exact.add(value)
            else:
                raise ValueError(f"Unknown denylist entry kind: {kind!r}")
        return cls(version=version, exact=frozenset(exact), contains=frozenset(contains))


# Noise labels the upstream classifier is known to produce: a generic
# catch-all plus information-only topics that never need staff.
DEFAULT_DENYLIST = CategoryDenylist(
    version="2025-01",
    exact=frozenset({"other"}),
    contains=frozenset({"wi-fi", "wifi", "direction", "taxi"}),
)
