"""
GrantDesk Backend: Session Directory
=====================================

What:  Live mapping from participant identifier to its connection and role.
Who:   Owned by RelayService, which guards every call with its lock.

Semantics:
    - One entry per identifier; register() is an upsert and returns the
      entry it replaced so the caller can close the old connection.
    - unregister() removes by connection identity (scans all entries), so a
      stale connection closing late never evicts its replacement.
    - Not thread-safe on its own; see RelayService.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from grantdesk.schemas.chat import ParticipantRole


@dataclass(frozen=True)
class DirectoryEntry:
    connection: Any
    role: ParticipantRole


class SessionDirectory:
    def __init__(self) -> None:
        self._entries: Dict[str, DirectoryEntry] = {}

    def register(
        self,
        identifier: str,
        connection: Any,
        role: ParticipantRole,
    ) -> Optional[DirectoryEntry]:
        previous = self._entries.get(identifier)
        self._entries[identifier] = DirectoryEntry(connection=connection, role=role)
        return previous

    def lookup(self, identifier: str) -> Optional[Any]:
        entry = self._entries.get(identifier)
        return entry.connection if entry else None

    def entry(self, identifier: str) -> Optional[DirectoryEntry]:
        return self._entries.get(identifier)

    def unregister(self, connection: Any) -> Optional[str]:
        """Remove the entry held by `connection`; returns its identifier."""
        for identifier, entry in self._entries.items():
            if entry.connection is connection:
                del self._entries[identifier]
                return identifier
        return None

    def all_with_role(self, role: ParticipantRole) -> List[Any]:
        return [e.connection for e in self._entries.values() if e.role is role]

    def connections(self) -> List[Any]:
        return [e.connection for e in self._entries.values()]

    def count_by_role(self) -> Dict[str, int]:
        counts = {role.value: 0 for role in ParticipantRole}
        for entry in self._entries.values():
            counts[entry.role.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries
