# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Polls the remote until a pushed commit shows up in the default branch's history.

The merge itself happens outside this process (a person or CI merging the
pull request), so there is nothing to subscribe to: each poll re-fetches
every ref and walks the default branch's ancestry looking for the commit.
Searching the ancestry rather than comparing with the tip matters because
the commit is usually reached through a merge commit, possibly several
commits behind the tip.

A merge that rewrites the commit (rebase or squash) produces a different id
and is never detected.
"""
import enum
import threading
import time
from typing import Callable, Optional

from . import DefaultNames
from .auth import AuthHandle
from .logs import getLogger
from .repo import GitRepo

logger = getLogger("kubeaid")

FETCH_ALL_REFSPEC = "refs/*:refs/*"


class WatchState(enum.Enum):
    AWAITING_MERGE = "awaiting merge"
    MERGED = "merged"
    TIMEOUT = "timeout"


class MergeWatcher:
    def __init__(
        self,
        repo: GitRepo,
        auth: AuthHandle,
        default_branch: str,
        commit: str,
        interval: float = DefaultNames.PollInterval,
        branch: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo = repo
        self.auth = auth
        self.default_branch = default_branch
        self.commit = commit
        self.interval = interval
        self.branch = branch
        self.clock = clock
        self.state = WatchState.AWAITING_MERGE
        self.polls = 0

    @property
    def default_ref(self) -> str:
        return f"refs/heads/{self.default_branch}"

    def is_merged(self) -> bool:
        """Check the local refs without fetching."""
        tip = self.repo.resolve_ref(self.default_ref)
        return self.repo.contains_commit(tip, self.commit)

    def poll(self) -> WatchState:
        """Fetch once and check the default branch. Errors propagate."""
        if self.state is WatchState.MERGED:
            return self.state
        self.polls += 1
        outcome = self.repo.fetch(FETCH_ALL_REFSPEC, self.auth)
        logger.trace("poll %s: fetch %s", self.polls, outcome.value)
        if self.is_merged():
            self.state = WatchState.MERGED
            logger.info(
                "detected merge of %s into %s", self.branch or self.commit, self.default_branch
            )
        return self.state

    def _wait_interval(self, deadline: Optional[float], cancel: threading.Event) -> bool:
        """Sleep until the next poll. Returns False if the wait was cut short."""
        interval = self.interval
        if deadline is not None:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return False
            interval = min(interval, remaining)
        return not cancel.wait(interval)

    def wait(
        self,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WatchState:
        """
        Poll until the commit is merged.

        Args:
            deadline: absolute time, as returned by the watcher's clock
                (``time.monotonic`` by default), after which ``TIMEOUT`` is
                returned. ``None`` waits forever.
            cancel: when set, the wait ends with ``TIMEOUT`` before the next poll.

        Returns:
            ``WatchState.MERGED`` or ``WatchState.TIMEOUT``
        """
        if cancel is None:
            cancel = threading.Event()
        while True:
            if cancel.is_set():
                break
            if self.poll() is WatchState.MERGED:
                return self.state
            logger.info(
                "waiting for %s to be merged into the default branch %s, sleeping for %s seconds...",
                self.branch or self.commit,
                self.default_branch,
                self.interval,
            )
            if not self._wait_interval(deadline, cancel):
                break
            if deadline is not None and self.clock() >= deadline:
                # one last look so a merge that landed during the sleep counts
                if self.poll() is WatchState.MERGED:
                    return self.state
                break
        self.state = WatchState.TIMEOUT
        logger.warning(
            "gave up waiting for %s to be merged into %s after %s polls",
            self.branch or self.commit,
            self.default_branch,
            self.polls,
        )
        return self.state
