"""
Item Reconciler
===============

Compares a freshly parsed item list with a feed's stored active and
archived items and computes the delta the store must apply:

- in fresh and active: update when the content hash differs, otherwise
  unchanged (last-seen is still bumped)
- in fresh only: resurrection when archived, otherwise insertion
- in active only: archival

GUID is the only join key and the content hash the only change detector.
Every list in the delta is sorted by GUID so the result does not depend on
the order of either input.
"""

from typing import Dict, Iterable, List

from ..database.models import Item, ItemChange, ItemDelta, ParsedItem
from ..utils.logging import get_logger_for_component


class Reconciler:
    """Computes item deltas between upstream and stored state."""

    def __init__(self):
        self.logger = get_logger_for_component("reconciler")

    def reconcile(
        self,
        feed_url: str,
        fresh_items: Iterable[ParsedItem],
        active_items: Iterable[Item],
        archived_items: Iterable[Item],
    ) -> ItemDelta:
        """Compute the delta for one feed.

        Args:
            feed_url: Feed being reconciled
            fresh_items: Items from this cycle's parse, in feed order
            active_items: Stored active items of the feed
            archived_items: Stored archived items of the feed

        Returns:
            ItemDelta with every list sorted by GUID
        """
        fresh, duplicates = self._index_fresh(fresh_items)
        active = {item.guid: item for item in active_items}
        archived = {
            item.guid: item for item in archived_items if item.guid not in active
        }

        delta = ItemDelta(feed_url=feed_url, duplicates=duplicates)

        for guid in sorted(fresh):
            item = fresh[guid]
            stored = active.get(guid)

            if stored is not None:
                change = ItemChange(
                    item_id=stored.id,
                    guid=guid,
                    fresh=item,
                    content_changed=stored.content_hash != item.content_hash,
                )
                if change.content_changed:
                    delta.updates.append(change)
                else:
                    delta.unchanged.append(change)
                continue

            stored = archived.get(guid)
            if stored is not None:
                delta.resurrections.append(
                    ItemChange(
                        item_id=stored.id,
                        guid=guid,
                        fresh=item,
                        content_changed=stored.content_hash != item.content_hash,
                    )
                )
            else:
                delta.inserts.append(item)

        for guid in sorted(active):
            if guid not in fresh:
                delta.archivals.append(ItemChange(item_id=active[guid].id, guid=guid))

        if duplicates:
            self.logger.warning(
                f"Feed {feed_url} repeats {len(duplicates)} GUIDs; keeping first occurrences",
                extra={"feed_url": feed_url, "duplicate_guids": duplicates[:10]},
            )

        self.logger.debug(f"Reconciled {feed_url}: {delta.counts()}")
        return delta

    def _index_fresh(self, fresh_items: Iterable[ParsedItem]):
        """Index fresh items by GUID keeping the first occurrence of each."""
        fresh: Dict[str, ParsedItem] = {}
        duplicates: List[str] = []

        for item in fresh_items:
            if item.guid in fresh:
                duplicates.append(item.guid)
                continue
            fresh[item.guid] = item

        return fresh, sorted(set(duplicates))
