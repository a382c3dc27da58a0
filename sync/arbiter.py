"""Priority arbiter: may a server write a field slot in this run?"""

from sync.availability import FieldAvailabilityIndex
from snapshot.models import FieldSlot, MediaKind, TitleKey


def may_write(
    index: FieldAvailabilityIndex,
    kind: MediaKind,
    key: TitleKey,
    slot: FieldSlot,
    server_id: str,
) -> bool:
    """
    True iff server_id is the first server advertising the slot.

    Precedence is decided per slot from current availability only: a server
    wins any slot no higher-precedence server advertises, regardless of its
    configured priority for other slots. A slot nobody advertises can't be
    written.
    """
    return index.winner(kind, key, slot) == server_id


def winning_slots(
    index: FieldAvailabilityIndex,
    kind: MediaKind,
    key: TitleKey,
    slots,
    server_id: str,
) -> list[FieldSlot]:
    return [slot for slot in slots if may_write(index, kind, key, slot, server_id)]
