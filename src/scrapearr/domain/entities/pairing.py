"""Domain entities for the device pairing flow."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from scrapearr.domain.entities.plugins import canonicalize_url


class ChangeState(str, Enum):
    """Lifecycle of a proposed repository-list change.

    ``PROPOSED`` is the only non-terminal state.
    """

    PROPOSED = "Proposed"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ChangeState.PROPOSED


@dataclass(frozen=True)
class RepositoryInfo:
    """Repository summary shown to the remote device."""

    url: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class ChangeDiff:
    """URLs to add and remove, relative to the current repository list."""

    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed

    @classmethod
    def between(cls, current: Iterable[str], proposed: Iterable[str]) -> ChangeDiff:
        """Diff on canonical URLs, keeping the caller's spelling and order."""
        current_list = list(current)
        proposed_list = list(proposed)
        current_keys = {canonicalize_url(u) for u in current_list}
        proposed_keys = {canonicalize_url(u) for u in proposed_list}

        added: list[str] = []
        seen: set[str] = set()
        for url in proposed_list:
            key = canonicalize_url(url)
            if key in current_keys or key in seen:
                continue
            seen.add(key)
            added.append(url)

        removed = [u for u in current_list if canonicalize_url(u) not in proposed_keys]
        return cls(added=tuple(added), removed=tuple(removed))


@dataclass(frozen=True)
class PendingChange:
    """A proposed repository-list change awaiting the local user's decision."""

    change_id: str
    proposed_urls: tuple[str, ...]
    created_at: float
    expires_at: float
    state: ChangeState = ChangeState.PROPOSED
    proposer: str | None = None
    diff: ChangeDiff = ChangeDiff()

    def same_proposal(self, urls: Iterable[str], proposer: str | None) -> bool:
        """True when *urls* (canonically, order-insensitive) and *proposer* match."""
        return proposer == self.proposer and {
            canonicalize_url(u) for u in urls
        } == {canonicalize_url(u) for u in self.proposed_urls}
