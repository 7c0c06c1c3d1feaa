"""
PropertyDirectory port and the category → Task Definition binding.

The directory is read-only to the engine: it supplies the task
definitions configured for a property and the Host's contact address.
match_definition() picks the definition for a classified category using
a descending-confidence strategy; the first tier that matches wins.
"""

import logging
from abc import ABC, abstractmethod

from taskflow.domain.task import TaskDefinition

log = logging.getLogger(__name__)


class PropertyDirectory(ABC):

    @abstractmethod
    async def definitions(self, property_id: str) -> list[TaskDefinition]:
        """Task definitions configured for a property, in configured order."""
        ...

    @abstractmethod
    async def host_address(self, property_id: str) -> str | None:
        """Contact address of the property's Host, or None if not set."""
        ...


def match_definition(
    category: str, definitions: list[TaskDefinition]
) -> TaskDefinition | None:
    """
    Resolve a category label to a definition.

    1. exact, case-insensitive label match
    2. definition label contained in the category ("Fresh Towels request")
    3. category contained in the definition label ("Towels")
    4. first word of the category is a prefix of the label ("Fresh ...")
    """
    wanted = category.strip().lower()
    if not wanted:
        return None
    labelled = [(d.label.strip().lower(), d) for d in definitions if d.label.strip()]

    for label, d in labelled:
        if label == wanted:
            return d
    for label, d in labelled:
        if label in wanted:
            return d
    for label, d in labelled:
        if wanted in label:
            return d

    first_word = wanted.split()[0]
    for label, d in labelled:
        if label.startswith(first_word):
            return d

    log.debug(
        "no definition for category=%r among %s",
        category, [d.label for d in definitions],
    )
    return None
