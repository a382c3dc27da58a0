"""
Field availability index.

For one sync invocation, records which servers currently advertise each
field slot of each title, in precedence order. Built once from every known
snapshot before any write happens and never mutated afterwards, so every
arbitration decision in a run sees the same point-in-time availability.
"""

from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from shared.log import create_logger
from snapshot.models import KIND_ORDER, FieldSlot, MediaKind, ServerSnapshot, TitleKey
from validation.config import ServerDescriptor

_, log_debug, _, log_warn, _ = create_logger("Availability")

_EMPTY: Mapping = MappingProxyType({})


class FieldAvailabilityIndex:
    """
    Immutable (kind, title, slot) -> ordered server ids mapping.

    Construct with FieldAvailabilityIndex.build(); the constructor takes
    already-frozen data.
    """

    def __init__(
        self,
        entries: Mapping[MediaKind, Mapping[TitleKey, Mapping[FieldSlot, tuple[str, ...]]]],
        server_order: tuple[str, ...],
    ):
        self._entries = entries
        self._server_order = server_order

    @classmethod
    def build(
        cls,
        snapshots: Iterable[ServerSnapshot],
        servers: Iterable[ServerDescriptor],
    ) -> 'FieldAvailabilityIndex':
        """
        Build the index from every current snapshot.

        Servers are visited in precedence order (lowest priority number
        first) and each advertising server is appended to a slot's list,
        so list order is precedence order without any post-hoc sort.

        Args:
            snapshots: One ServerSnapshot per participating server
            servers: Configured servers; snapshots from unknown servers are ignored

        Raises:
            ValueError: If two participating servers share a priority
        """
        by_server = {s.server_id: s for s in snapshots}
        ordered = [s for s in sorted(servers, key=lambda s: s.priority) if s.id in by_server]

        claimed: dict[int, str] = {}
        for server in ordered:
            if server.priority in claimed:
                raise ValueError(
                    f"Servers {claimed[server.priority]} and {server.id} share priority {server.priority}"
                )
            claimed[server.priority] = server.id

        unknown = set(by_server) - {s.id for s in ordered}
        if unknown:
            log_warn(f"Ignoring snapshots from unconfigured servers: {sorted(unknown)}")

        entries = {}
        for kind in KIND_ORDER:
            per_title: dict[TitleKey, dict[FieldSlot, list[str]]] = {}
            for server in ordered:
                for key, offer in by_server[server.id].titles.get(kind, {}).items():
                    slots = per_title.setdefault(key, {})
                    for slot in offer.slots():
                        advertisers = slots.setdefault(slot, [])
                        if server.id not in advertisers:
                            advertisers.append(server.id)
            entries[kind] = MappingProxyType({
                key: MappingProxyType({slot: tuple(ids) for slot, ids in slots.items()})
                for key, slots in per_title.items()
            })

        index = cls(MappingProxyType(entries), tuple(s.id for s in ordered))
        log_debug(
            f"Availability index built for servers {list(index.server_order)}: "
            + ', '.join(f"{kind.value}={len(entries[kind])}" for kind in KIND_ORDER)
        )
        return index

    @property
    def server_order(self) -> tuple[str, ...]:
        return self._server_order

    def has_server(self, server_id: str) -> bool:
        return server_id in self._server_order

    def servers_for(self, kind: MediaKind, key: TitleKey, slot: FieldSlot) -> tuple[str, ...]:
        """Servers advertising a slot, highest precedence first (empty if none)."""
        return self._entries.get(kind, _EMPTY).get(key, _EMPTY).get(slot, ())

    def slots_for(self, kind: MediaKind, key: TitleKey) -> Mapping[FieldSlot, tuple[str, ...]]:
        return self._entries.get(kind, _EMPTY).get(key, _EMPTY)

    def winner(self, kind: MediaKind, key: TitleKey, slot: FieldSlot) -> Optional[str]:
        servers = self.servers_for(kind, key, slot)
        return servers[0] if servers else None

    def titles(self, kind: MediaKind) -> list[TitleKey]:
        return list(self._entries.get(kind, _EMPTY))
