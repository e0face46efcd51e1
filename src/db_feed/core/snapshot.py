"""
Snapshot Diff Engine.

Keeps two maps of document identifier to checksum: *previous*, what the last
complete pass saw, and *current*, what this pass has seen so far. Comparing
each observed row against *previous* classifies it, and whatever is left in
*previous* once the pass ends has been deleted from the source.
"""

from __future__ import annotations

import logging
from enum import Enum

from db_feed.core.docid import DEFAULT_ORDERING, ValueOrdering, docid_sort_key

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


class DiffState(str, Enum):
    SCANNING = "scanning"
    PASS_COMPLETE = "pass_complete"


class SnapshotDiff:
    """
    Change detection between two traversal passes.

    Example:
        diff = SnapshotDiff(previous={"B/1": "aa", "B/2": "bb"})
        diff.observe("B/1", "aa")     # ChangeKind.UNCHANGED
        diff.observe("B/3", "cc")     # ChangeKind.NEW
        diff.complete_pass()          # [("B/2", "bb")]
    """

    def __init__(
        self,
        previous: dict[str, str] | None = None,
        current: dict[str, str] | None = None,
        ordering: ValueOrdering = DEFAULT_ORDERING,
    ) -> None:
        self.previous: dict[str, str] = dict(previous or {})
        self.current: dict[str, str] = dict(current or {})
        self.ordering = ordering
        self._state = DiffState.SCANNING

    @property
    def state(self) -> DiffState:
        return self._state

    def observe(self, docid: str, checksum: str) -> ChangeKind:
        """
        Record that ``docid`` was seen with ``checksum`` in this pass.

        Returns whether the row is new, changed or unchanged relative to the
        previous pass. The caller sends a record for anything but UNCHANGED.
        """
        self._state = DiffState.SCANNING
        if docid in self.current:
            # Seen twice in one pass; compare with the first sighting
            known = self.current[docid]
        else:
            known = self.previous.get(docid)
        self.current[docid] = checksum

        if known is None:
            return ChangeKind.NEW
        if known == checksum:
            return ChangeKind.UNCHANGED
        return ChangeKind.CHANGED

    def retain(self, docid: str) -> None:
        """Keep the previous checksum of a row that was seen but not built."""
        if docid not in self.current and docid in self.previous:
            self.current[docid] = self.previous[docid]

    def unseen(self) -> list[str]:
        """Identifiers from the previous pass not observed yet."""
        return [docid for docid in self.previous if docid not in self.current]

    def complete_pass(self, reconcile: bool = True) -> list[tuple[str, str]]:
        """
        End the pass and rotate the maps.

        Args:
            reconcile: When False the pass was cut short, so unseen entries
                are carried into the next pass instead of being deleted

        Returns:
            ``(docid, checksum)`` of every deleted document, in identifier order
        """
        unseen = sorted(self.unseen(), key=docid_sort_key(self.ordering))
        if reconcile:
            deletions = [(docid, self.previous[docid]) for docid in unseen]
            next_previous = self.current
        else:
            deletions = []
            next_previous = dict(self.current)
            for docid in unseen:
                next_previous[docid] = self.previous[docid]
            if unseen:
                logger.info("Pass ended early; %d unseen documents kept", len(unseen))

        self.previous = next_previous
        self.current = {}
        self._state = DiffState.PASS_COMPLETE
        return deletions
