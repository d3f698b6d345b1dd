# buildingsync/domain/policies.py
from __future__ import annotations

from dataclasses import dataclass

from ..models import CandidateStatus, DiscoveryStatus, NameSource


# Forward-only ordering used by discovery. A canonical match lifts syncing and
# failed rows to synced; nothing a discovery pass proposes ranks above db_linked.
STATUS_RANK: dict[CandidateStatus, int] = {
    CandidateStatus.pending: 0,
    CandidateStatus.syncing: 1,
    CandidateStatus.failed: 1,
    CandidateStatus.synced: 2,
    CandidateStatus.db_linked: 3,
}

LINKED_STATUSES: frozenset[CandidateStatus] = frozenset({CandidateStatus.synced, CandidateStatus.db_linked})


@dataclass(frozen=True)
class StagedName:
    building_name: str | None
    building_name_original: str | None
    name_source: NameSource | None


@dataclass(frozen=True)
class NameMerge:
    building_name: str | None
    building_name_original: str | None
    name_source: NameSource | None
    name_uncertain: bool


def is_manual_override(staged: StagedName) -> bool:
    """
    A staged name counts as an operator edit when it was flagged manual, when
    it has no source (machine writes always record one), or when it drifted
    from the machine value that was written next to it.
    """
    if staged.name_source == NameSource.manual:
        return True
    if staged.building_name and staged.name_source is None:
        return True
    return bool(
        staged.building_name
        and staged.building_name_original
        and staged.building_name != staged.building_name_original
    )


def merge_name(resolved: str | None, resolved_source: NameSource | None, staged: StagedName | None) -> NameMerge:
    """
    Three-way merge of the freshly resolved name against the staged row.

    | staged row            | fresh name | result                                  |
    |-----------------------|------------|-----------------------------------------|
    | none                  | any        | fresh                                   |
    | manual override       | any        | keep staged name, source=manual         |
    | machine-written       | present    | fresh                                   |
    | machine-written       | none       | keep staged name and its source         |

    building_name_original always takes the fresh machine value.
    """
    if staged is None:
        name, source = resolved, resolved_source
    elif is_manual_override(staged):
        name, source = staged.building_name, NameSource.manual
    elif resolved:
        name, source = resolved, resolved_source
    else:
        name, source = staged.building_name, staged.name_source

    return NameMerge(
        building_name=name,
        building_name_original=resolved,
        name_source=source if name else None,
        name_uncertain=not name,
    )


def merge_status(
    staged: CandidateStatus | None,
    *,
    canonical_match: bool,
) -> CandidateStatus:
    """
    Status for a candidate after a discovery pass. Never moves backwards; a
    matching canonical building proves the candidate is at least synced.
    """
    proposed = CandidateStatus.synced if canonical_match else CandidateStatus.pending
    if staged is None:
        return proposed
    if STATUS_RANK[proposed] > STATUS_RANK[staged]:
        return proposed
    return staged


def rollup_status(discovered: int, synced: int) -> DiscoveryStatus:
    if discovered <= 0:
        return DiscoveryStatus.not_started
    if synced >= discovered:
        return DiscoveryStatus.complete
    return DiscoveryStatus.discovered
