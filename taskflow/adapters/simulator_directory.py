from taskflow.domain.directory import PropertyDirectory
from taskflow.domain.task import TaskDefinition


class InMemoryPropertyDirectory(PropertyDirectory):
    """
    Dict-backed directory for tests and the dev runner.

    Test helpers:
        add_definition(d)    register a definition for d.property_id
        set_host(p, addr)    set the Host contact for a property
    """

    def __init__(self):
        self._definitions: dict[str, list[TaskDefinition]] = {}
        self._hosts: dict[str, str] = {}

    async def definitions(self, property_id: str) -> list[TaskDefinition]:
        return list(self._definitions.get(property_id, []))

    async def host_address(self, property_id: str) -> str | None:
        return self._hosts.get(property_id)

    def add_definition(self, definition: TaskDefinition) -> None:
        self._definitions.setdefault(definition.property_id, []).append(definition)

    def set_host(self, property_id: str, host_address: str) -> None:
        self._hosts[property_id] = host_address
