"""Repository pairing use case.

Remote device proposes a repository URL list -> URLs validated as
manifests -> local user confirms (diff applied) or rejects.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import Any
from uuid import uuid4

import structlog

from scrapearr.domain.entities.pairing import (
    ChangeDiff,
    ChangeState,
    PendingChange,
    RepositoryInfo,
)
from scrapearr.domain.entities.plugins import canonicalize_url
from scrapearr.domain.exceptions import ProposalValidationError

log = structlog.get_logger(__name__)

# Current installed repositories, in installation order.
CurrentRepositories = Callable[[], Sequence[RepositoryInfo]]
# Manifest check: RepositoryInfo when the URL serves a usable manifest.
ManifestFetcher = Callable[[str], Awaitable[RepositoryInfo | None]]
# Applies a confirmed diff (RepositoryManager.apply_diff).
ApplyChange = Callable[[ChangeDiff], Awaitable[Any]]
# Notified once per new proposal; may be sync or async.
ProposalListener = Callable[[PendingChange], Any]


def _clean_urls(urls: Sequence[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for url in urls:
        url = url.strip()
        key = canonicalize_url(url)
        if not url or key in seen:
            continue
        seen.add(key)
        out.append(url)
    return out


class PairingCoordinator:
    """Two-phase propose / confirm-or-reject state machine.

    At most one change is ``Proposed`` at a time; a new proposal expires
    the previous one. Proposed changes past their TTL read as
    ``Expired``. Transitions out of ``Proposed`` are final.
    """

    def __init__(
        self,
        *,
        current_repositories: CurrentRepositories,
        manifest_fetcher: ManifestFetcher,
        apply_change: ApplyChange,
        on_change_proposed: ProposalListener | None = None,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._current_repositories = current_repositories
        self._manifest_fetcher = manifest_fetcher
        self._apply_change = apply_change
        self._on_change_proposed = on_change_proposed
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._changes: dict[str, PendingChange] = {}
        self._live_id: str | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def repositories(self) -> list[RepositoryInfo]:
        return list(self._current_repositories())

    def get(self, change_id: str) -> PendingChange | None:
        change = self._changes.get(change_id)
        return self._expire_if_stale(change) if change is not None else None

    def status(self, change_id: str) -> ChangeState | None:
        change = self.get(change_id)
        return change.state if change is not None else None

    async def describe(self, url: str) -> RepositoryInfo | None:
        """Manifest summary for a single URL (remote-side validation)."""
        return await self._manifest_fetcher(url.strip())

    @property
    def live_change(self) -> PendingChange | None:
        """The change currently awaiting a decision, if any."""
        if self._live_id is None:
            return None
        change = self.get(self._live_id)
        if change is None or change.state is not ChangeState.PROPOSED:
            return None
        return change

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def propose(
        self, urls: Sequence[str], proposer: str | None = None
    ) -> PendingChange:
        """Register a proposed repository list.

        Raises:
            ProposalValidationError: one or more URLs are not usable manifests.
        """
        cleaned = _clean_urls(urls)

        async with self._lock:
            live = self.live_change
            if live is not None and live.same_proposal(cleaned, proposer):
                log.debug("pairing_proposal_resubmitted", change_id=live.change_id)
                return live

            infos = await asyncio.gather(
                *(self._manifest_fetcher(u) for u in cleaned),
                return_exceptions=True,
            )
            invalid = [
                url
                for url, info in zip(cleaned, infos)
                if info is None or isinstance(info, BaseException)
            ]
            if invalid:
                log.info("pairing_proposal_invalid", invalid_urls=invalid)
                raise ProposalValidationError(
                    f"{len(invalid)} URL(s) are not valid repository manifests",
                    invalid_urls=invalid,
                )

            live = self.live_change
            if live is not None:
                self._store(replace(live, state=ChangeState.EXPIRED))
                log.info("pairing_change_superseded", change_id=live.change_id)

            now = self._clock()
            change = PendingChange(
                change_id=uuid4().hex,
                proposed_urls=tuple(cleaned),
                created_at=now,
                expires_at=now + self._ttl,
                proposer=proposer,
                diff=ChangeDiff.between(self._current_urls(), cleaned),
            )
            self._store(change)
            self._live_id = change.change_id
            log.info(
                "pairing_change_proposed",
                change_id=change.change_id,
                proposer=proposer,
                added=len(change.diff.added),
                removed=len(change.diff.removed),
            )

        await self._notify(change)
        return change

    async def confirm_change(self, change_id: str) -> PendingChange | None:
        """Apply a live change. No-op for unknown or already-decided ids."""
        async with self._lock:
            change = self.get(change_id)
            if change is None or change.state is not ChangeState.PROPOSED:
                log.debug("pairing_confirm_ignored", change_id=change_id)
                return change

            # The repository list may have changed since the proposal
            diff = ChangeDiff.between(self._current_urls(), change.proposed_urls)
            await self._apply_change(diff)

            confirmed = replace(change, state=ChangeState.CONFIRMED, diff=diff)
            self._store(confirmed)
            log.info(
                "pairing_change_confirmed",
                change_id=change_id,
                added=len(diff.added),
                removed=len(diff.removed),
            )
            return confirmed

    async def reject_change(self, change_id: str) -> PendingChange | None:
        """Reject a live change. No-op for unknown or already-decided ids."""
        async with self._lock:
            change = self.get(change_id)
            if change is None or change.state is not ChangeState.PROPOSED:
                log.debug("pairing_reject_ignored", change_id=change_id)
                return change

            rejected = replace(change, state=ChangeState.REJECTED)
            self._store(rejected)
            log.info("pairing_change_rejected", change_id=change_id)
            return rejected

    def expire_live(self) -> None:
        """Expire the live change (server shutdown)."""
        live = self.live_change
        if live is not None:
            self._store(replace(live, state=ChangeState.EXPIRED))
            log.info("pairing_change_expired", change_id=live.change_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _current_urls(self) -> list[str]:
        return [info.url for info in self._current_repositories()]

    def _store(self, change: PendingChange) -> None:
        self._changes[change.change_id] = change
        if change.state.is_terminal and self._live_id == change.change_id:
            self._live_id = None

    def _expire_if_stale(self, change: PendingChange) -> PendingChange:
        if change.state is ChangeState.PROPOSED and self._clock() >= change.expires_at:
            change = replace(change, state=ChangeState.EXPIRED)
            self._store(change)
            log.info("pairing_change_expired", change_id=change.change_id)
        return change

    async def _notify(self, change: PendingChange) -> None:
        if self._on_change_proposed is None:
            return
        try:
            result = self._on_change_proposed(change)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.error(
                "pairing_listener_failed", change_id=change.change_id, exc_info=True
            )
