"""
Title bootstrapper.

Creates minimal placeholder records for titles a server advertises that
the canonical store doesn't know yet, one bulk insert per media kind.
Duplicate keys (another run got there first) are skipped, not fatal.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from shared.log import create_logger
from snapshot.models import KIND_ORDER, MediaKind, ServerSnapshot, TitleKey, TitleOffer
from store.base import RecordStore

_, log_debug, log_info, log_warn, log_error = create_logger("Bootstrap")


@dataclass
class BootstrapResult:
    """Outcome of bootstrapping one snapshot.

    Attributes:
        created: Per kind, keys that were missing and submitted for insert
        inserted: Per kind, how many placeholders the store accepted
        errors: Non-fatal errors (one per failed kind)
    """
    created: dict[MediaKind, list[TitleKey]] = field(default_factory=dict)
    inserted: dict[MediaKind, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())


def build_placeholder(offer: TitleOffer, server_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
    """Minimal document for a newly discovered title."""
    now = now or datetime.now(timezone.utc)
    key = offer.key
    record: dict[str, Any] = {
        'type': offer.kind.value,
        'initialDiscoveryServer': server_id,
        'initialDiscoveryDate': now.isoformat(),
    }
    if offer.kind in (MediaKind.MOVIE, MediaKind.SHOW):
        record['title'] = key.title
        record['originalTitle'] = key.title
    elif offer.kind is MediaKind.SEASON:
        record['title'] = f"Season {key.season}"
        record['showTitle'] = key.title
        record['seasonNumber'] = key.season
    else:
        record['title'] = f"Episode {key.episode}"
        record['showTitle'] = key.title
        record['seasonNumber'] = key.season
        record['episodeNumber'] = key.episode
        if offer.file_name:
            record['fileName'] = offer.file_name
    return record


class TitleBootstrapper:
    """Inserts placeholders for unknown titles before field sync runs."""

    def __init__(self, store: RecordStore):
        self.store = store

    def run(self, snapshot: ServerSnapshot, cancel_event=None) -> BootstrapResult:
        """
        Insert placeholders for every title in the snapshot not yet stored.

        Kinds are processed parents first. A store failure for one kind is
        recorded and the remaining kinds still run.
        """
        result = BootstrapResult()
        now = datetime.now(timezone.utc)

        for kind in KIND_ORDER:
            if cancel_event is not None and cancel_event.is_set():
                log_info("Bootstrap cancelled")
                break

            offers = snapshot.offers(kind)
            if not offers:
                continue

            try:
                missing = [o for o in offers if not self.store.exists(kind, o.key)]
                result.created[kind] = [o.key for o in missing]
                if not missing:
                    result.inserted[kind] = 0
                    continue
                placeholders = [build_placeholder(o, snapshot.server_id, now) for o in missing]
                inserted = self.store.bulk_insert_placeholders(kind, placeholders)
                result.inserted[kind] = inserted
            except Exception as e:
                result.errors.append(f"Bootstrap of {kind.value} titles failed: {e}")
                log_error(f"Bootstrap of {kind.value} titles from {snapshot.server_id} failed: {e}")
                continue

            if inserted < len(missing):
                log_warn(
                    f"Inserted {inserted}/{len(missing)} {kind.value} placeholders "
                    f"from {snapshot.server_id}; the rest already existed"
                )
            else:
                log_info(f"Created {inserted} {kind.value} placeholder(s) from {snapshot.server_id}")

        return result
