# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
The git side of a bootstrap run.

Generated files are published on an isolated branch and the run waits for a
person (or CI) to merge that branch into the default branch::

    BranchIsolator -> (file generation) -> ChangeRecorder -> Publisher -> MergeWatcher

Each step only consumes the previous step's output (branch name, commit id,
push confirmation) and every failure is raised immediately.
"""
import datetime
import threading
from dataclasses import dataclass
from typing import Optional

from . import DefaultNames
from .auth import AuthHandle
from .logs import getLogger
from .repo import GitRepo
from .util import BranchAlreadyExists, LocalGitFailure
from .watcher import MergeWatcher, WatchState

logger = getLogger("kubeaid")


def make_branch_name(prefix: str, cluster: str, timestamp: int) -> str:
    return f"{prefix}-{cluster}-{timestamp}"


def cluster_pathspec(cluster: str) -> str:
    # a git pathspec glob: "*" also matches "/", so nested files are included
    return f"{DefaultNames.ClusterParentDirectory}/{cluster}/*"


@dataclass(frozen=True)
class CommitRecord:
    hexsha: str
    branch: str
    message: str


class BranchIsolator:
    def __init__(self, repo: GitRepo):
        self.repo = repo

    def isolate(self, branch: str) -> str:
        existing = self.repo.find_branch_refs(branch)
        if existing:
            raise BranchAlreadyExists(branch, existing)
        self.repo.create_and_checkout_branch(branch)
        logger.info("created and checked out branch '%s'", branch)
        return branch


class ChangeRecorder:
    def __init__(
        self,
        repo: GitRepo,
        author: str = DefaultNames.CommitAuthor,
        email: str = DefaultNames.CommitEmail,
    ):
        self.repo = repo
        self.author = author
        self.email = email

    @staticmethod
    def commit_message(cluster: str) -> str:
        return f"KubeAid bootstrap setup for argo-cd applications on {cluster}\n"

    def record(
        self, cluster: str, pathspec: str = "", when: Optional[datetime.datetime] = None
    ) -> CommitRecord:
        pathspec = pathspec or cluster_pathspec(cluster)
        self.repo.stage(pathspec)
        staged = self.repo.staged_paths()
        if not staged:
            raise LocalGitFailure(f"failed creating git commit: nothing staged under {pathspec}")
        logger.verbose("staged %s files: %s", len(staged), staged)
        message = self.commit_message(cluster)
        commit = self.repo.commit(message, self.author, self.email, when)
        logger.info("committed %s files | commit hash = %s", len(staged), commit.hexsha)
        return CommitRecord(commit.hexsha, self.repo.active_branch, message)


class Publisher:
    def __init__(self, repo: GitRepo, auth: AuthHandle, remote: str = DefaultNames.RemoteName):
        self.repo = repo
        self.auth = auth
        self.remote = remote

    def publish(self, record: CommitRecord) -> None:
        refspec = f"refs/heads/{record.branch}:refs/heads/{record.branch}"
        self.repo.push(refspec, self.auth, self.remote)
        logger.info("pushed branch '%s' to %s", record.branch, self.remote)


class ChangeWorkflow:
    """
    Runs the branch / commit / push / wait sequence against one working copy.

    ``default_branch`` is resolved from the clone's HEAD when the workflow is
    created and is never re-resolved, even if the remote's default branch
    changes while we wait.
    """

    def __init__(
        self,
        repo: GitRepo,
        auth: AuthHandle,
        cluster: str,
        branch: str,
        poll_interval: float = DefaultNames.PollInterval,
    ):
        self.repo = repo
        self.auth = auth
        self.cluster = cluster
        self.branch = branch
        self.poll_interval = poll_interval
        self.default_branch = repo.resolve_head_branch()
        self.record: Optional[CommitRecord] = None
        self.watcher: Optional[MergeWatcher] = None

    def isolate(self) -> str:
        return BranchIsolator(self.repo).isolate(self.branch)

    def commit(self, when: Optional[datetime.datetime] = None) -> CommitRecord:
        self.record = ChangeRecorder(self.repo).record(self.cluster, when=when)
        return self.record

    def publish(self) -> CommitRecord:
        assert self.record, "commit() must be called before publish()"
        Publisher(self.repo, self.auth).publish(self.record)
        return self.record

    def wait_for_merge(
        self,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WatchState:
        assert self.record, "commit() must be called before wait_for_merge()"
        self.watcher = MergeWatcher(
            self.repo,
            self.auth,
            self.default_branch,
            self.record.hexsha,
            interval=self.poll_interval,
            branch=self.branch,
        )
        return self.watcher.wait(deadline, cancel)
