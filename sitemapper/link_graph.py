from __future__ import annotations

from collections import defaultdict
from typing import Any, Container, Dict, Mapping, Optional, Set, Tuple


class LinkGraph:
    """Link counts for one crawl job.

    Out-counts are distinct targets per source page. In-counts are distinct
    source pages per target and are only final once the traversal is over,
    since later pages keep adding inbound edges. The external registry counts
    every reference to an external destination together with the pages that
    referenced it.
    """

    def __init__(self, external_links: Optional[Mapping[str, Any]] = None):
        self._internal_out: Dict[str, Set[str]] = defaultdict(set)
        self._external_out: Dict[str, Set[str]] = defaultdict(set)
        self._incoming: Dict[str, Set[str]] = defaultdict(set)
        self._registry: Dict[str, Dict[str, Any]] = {}

        for target, entry in (external_links or {}).items():
            self._registry[target] = {
                "occurrences": int((entry or {}).get("occurrences") or 0),
                "referring_pages": set((entry or {}).get("referring_pages") or ()),
            }

    def add_internal(self, source: str, target: str) -> bool:
        """Record an in-scope edge. Returns False if the edge was already known."""
        if target in self._internal_out[source]:
            return False
        self._internal_out[source].add(target)
        self._incoming[target].add(source)
        return True

    def add_external(self, source: str, target: str) -> None:
        self._external_out[source].add(target)

        entry = self._registry.get(target)
        if entry is None:
            entry = self._registry[target] = {"occurrences": 0, "referring_pages": set()}
        entry["occurrences"] += 1
        entry["referring_pages"].add(source)

    def out_counts(self, source: str) -> Tuple[int, int]:
        """(internal, external) distinct outbound targets of a page."""
        return (
            len(self._internal_out.get(source, ())),
            len(self._external_out.get(source, ())),
        )

    def incoming_count(self, target: str, sources: Optional[Container[str]] = None) -> int:
        """Distinct sources linking to ``target``, optionally only those in ``sources``."""
        incoming = self._incoming.get(target, ())
        if sources is None:
            return len(incoming)
        return sum(1 for source in incoming if source in sources)

    def external_registry(self) -> Dict[str, Dict[str, Any]]:
        """JSON-ready copy of the registry, referring pages sorted."""
        return {
            target: {
                "occurrences": entry["occurrences"],
                "referring_pages": sorted(entry["referring_pages"]),
            }
            for target, entry in sorted(self._registry.items())
        }

    def __len__(self) -> int:
        return sum(len(targets) for targets in self._internal_out.values())
