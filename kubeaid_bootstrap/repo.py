# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Thin wrapper around a GitPython working copy.

Exposes the primitives the change workflow is built on (clone, branch, stage,
commit, push, fetch and ancestry walks) and translates git failures into
:class:`~kubeaid_bootstrap.util.BootstrapError` subclasses.
"""
import datetime
import enum
import logging
import os
import os.path
import sys
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Union
from urllib.parse import quote, urlparse

import git
import git.exc
from git.objects import Commit
from git.util import Actor

from . import DefaultNames
from .logs import getLogger, PY_COLORS
from .util import (
    LocalGitFailure,
    RemoteOperationFailure,
    ResolutionFailure,
)

if TYPE_CHECKING:
    from .auth import AuthHandle

logger = getLogger("kubeaid")


def add_user_to_url(url: str, username: str, password: str) -> str:
    assert username
    parts = urlparse(url)
    user, sep, host = parts.netloc.rpartition("@")
    username = quote(username, safe="")
    if password:
        netloc = f"{username}:{quote(password, safe='')}@{host}"
    else:
        netloc = f"{username}@{host}"

    return parts._replace(netloc=netloc).geturl()


def normalize_git_url(url: str) -> str:
    if "://" not in url:  # not an absolute URL, convert some common patterns
        if url.startswith("/"):
            return "file://" + os.path.abspath(url)
        elif url.startswith("~"):
            return "file://" + os.path.abspath(os.path.expanduser(url))
        elif url.startswith("file:"):
            # git doesn't like relative file URLs
            return "file://" + os.path.abspath(os.path.expanduser(url[5:]))
        elif "@" in url:  # scp style used by git: user@server:project.git
            # convert to ssh://user@server/project.git
            url = "ssh://" + url.replace(":", "/", 1)
    return url


def sanitize_url(url: str, redact: bool = True) -> str:
    if "://" in url and "@" in url:
        parts = urlparse(url)
        user, sep, host = parts.netloc.rpartition("@")
        if user:
            user, sep, password = user.partition(":")
            if redact:
                netloc = f"XXXXX{':XXXXX' if password else ''}@{host}"
            else:
                netloc = host
            return parts._replace(netloc=netloc).geturl()
    return url


def add_transient_credentials(gitcmd: git.Git, url: str, username: str, password: str) -> None:
    transient_url = add_user_to_url(url, username, password)
    # git takes the -c value literally, quotes would become part of the urls
    replacement = f"url.{transient_url}.insteadOf={url}"
    # _git_options get cleared after next git command is issued
    gitcmd._git_options = gitcmd.transform_kwargs(
        split_single_char_options=True, c=replacement
    )


def prepare_auth(gitcmd: git.Git, auth: "AuthHandle", url: str) -> None:
    # GitPython runs `git version` on demand (clone --progress needs it) and that
    # command would use up the one-shot options set by auth.prepare()
    gitcmd.version_info
    auth.prepare(gitcmd, url)


class FetchOutcome(enum.Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up to date"


class _ProgressPrinter(git.RemoteProgress):
    gitUrl = ""

    def update(self, op_code, cur_count, max_count=None, message=""):
        # we use print instead of logging because we don't want to clutter logs with this message
        if message and logger.getEffectiveLevel() <= logging.INFO:
            print(f"fetching from {self.gitUrl}, received: {message} ", file=sys.stderr)


def _progress(url: str) -> Optional[_ProgressPrinter]:
    if os.getenv("CI") or not PY_COLORS:
        return None
    progress = _ProgressPrinter()
    progress.gitUrl = sanitize_url(url)
    return progress


def _error_detail(err: Exception) -> str:
    stderr = getattr(err, "stderr", "")
    if stderr:
        return stderr.strip()
    return str(err)


class GitRepo:
    def __init__(self, gitrepo: git.Repo):
        self.repo = gitrepo
        remote = self.remote
        self.url = remote.url if remote else self.working_dir

    @classmethod
    def clone(
        cls, url: str, localRepoPath: str, auth: "AuthHandle", **kw
    ) -> "GitRepo":
        if os.path.exists(localRepoPath):
            if not os.path.isdir(localRepoPath) or os.listdir(localRepoPath):
                raise RemoteOperationFailure(
                    f"couldn't clone into {localRepoPath}, it already exists and isn't empty"
                )
        parent_dir = os.path.dirname(localRepoPath)
        if parent_dir.strip("/"):
            os.makedirs(parent_dir, exist_ok=True)
        cleanurl = sanitize_url(url)
        logger.info("cloning %s to %s using %s", cleanurl, localRepoPath, auth)
        kwargs = dict(no_single_branch=True, **kw)
        progress = _progress(url)
        if progress:
            kwargs["progress"] = progress
        # equivalent to git.Repo.clone_from() with the auth handle applied
        gitcmd = git.Repo.GitCommandWrapperType(os.getcwd())
        prepare_auth(gitcmd, auth, url)
        try:
            with gitcmd.custom_environment(**auth.environment()):
                repo = git.Repo._clone(
                    gitcmd, url, localRepoPath, git.GitCmdObjectDB, **kwargs
                )
        except git.exc.GitCommandError as err:
            raise RemoteOperationFailure(
                f"failed cloning repo {cleanurl} into {localRepoPath}: {_error_detail(err)}"
            )
        logger.info("cloned repo %s in %s", cleanurl, localRepoPath)
        return cls(repo)

    @property
    def working_dir(self) -> str:
        return str(self.repo.working_tree_dir or "")

    @property
    def safe_url(self) -> str:
        return sanitize_url(self.url, True)

    @property
    def revision(self) -> str:
        if not self.repo.head.is_valid():
            return ""
        return self.repo.head.commit.hexsha

    @property
    def remote(self) -> Optional[git.Remote]:
        gitrepo = self.repo
        if gitrepo.remotes:
            try:
                return gitrepo.remotes[DefaultNames.RemoteName]
            except IndexError:
                return gitrepo.remotes[0]
        return None

    @property
    def active_branch(self) -> str:
        try:
            return self.repo.active_branch.name
        except TypeError:
            # detached head
            return ""

    def _get_remote(self, name: str) -> git.Remote:
        try:
            return self.repo.remotes[name]
        except IndexError:
            raise ResolutionFailure(f"repository at {self.working_dir} has no remote named '{name}'")

    def resolve_head_branch(self) -> str:
        """Return the short name of the branch HEAD points to."""
        head = self.repo.head
        if not head.is_valid():
            raise ResolutionFailure(f"HEAD of {self.safe_url} doesn't point to a commit")
        if head.is_detached:
            raise ResolutionFailure(f"HEAD of {self.safe_url} is detached")
        return head.reference.name

    def resolve_ref(self, name: str) -> str:
        """Return the commit hexsha a fully qualified ref points to."""
        try:
            return self.repo.git.rev_parse("--verify", name + "^{commit}")
        except git.exc.GitCommandError as err:
            raise ResolutionFailure(f"failed resolving ref {name}: {_error_detail(err)}")

    def has_reference(self, name: str) -> bool:
        try:
            self.repo.git.show_ref("--verify", "--quiet", name)
        except git.exc.GitCommandError:
            return False
        return True

    def ref_snapshot(self) -> Dict[str, str]:
        listing = self.repo.git.for_each_ref(format="%(objectname) %(refname)")
        return {
            name: sha
            for sha, sep, name in (line.partition(" ") for line in listing.splitlines())
        }

    def find_branch_refs(self, branch: str) -> List[str]:
        """Every local or remote-tracking ref that uses the given branch name."""
        candidates = [f"refs/heads/{branch}"]
        candidates.extend(f"refs/remotes/{remote.name}/{branch}" for remote in self.repo.remotes)
        return [name for name in candidates if self.has_reference(name)]

    def create_and_checkout_branch(self, name: str) -> None:
        try:
            self.repo.git.checkout("-b", name)
        except git.exc.GitCommandError as err:
            raise LocalGitFailure(f"failed creating branch '{name}': {_error_detail(err)}")

    def stage(self, pathspec: str) -> None:
        try:
            self.repo.git.add("--", pathspec)
        except git.exc.GitCommandError as err:
            raise LocalGitFailure(f"failed staging {pathspec}: {_error_detail(err)}")

    def staged_paths(self) -> List[str]:
        if not self.repo.head.is_valid():
            return [path for (path, stage) in self.repo.index.entries]
        return [diff.b_path or diff.a_path for diff in self.repo.index.diff("HEAD")]

    def commit(
        self,
        message: str,
        author: str,
        email: str,
        when: Optional[datetime.datetime] = None,
    ) -> Commit:
        actor = Actor(author, email)
        when = when or datetime.datetime.now(datetime.timezone.utc)
        # git's raw date format, "<epoch seconds> <utc offset>"
        date = f"{int(when.timestamp())} +0000"
        try:
            return self.repo.index.commit(
                message,
                author=actor,
                committer=actor,
                author_date=date,
                commit_date=date,
            )
        except (ValueError, OSError, git.exc.GitError) as err:
            raise LocalGitFailure(f"failed creating git commit: {err}")

    def push(self, refspec: str, auth: "AuthHandle", remote: str = DefaultNames.RemoteName) -> None:
        origin = self._get_remote(remote)
        if refspec.startswith("+"):
            raise RemoteOperationFailure(f"refusing to force push {refspec}")
        prepare_auth(self.repo.git, auth, origin.url)
        try:
            with self.repo.git.custom_environment(**auth.environment()):
                # git exits non-zero if any ref is rejected
                self.repo.git.push(origin.name, refspec)
        except git.exc.GitCommandError as err:
            raise RemoteOperationFailure(f"git push of {refspec} failed: {_error_detail(err)}")
        logger.verbose("pushed %s to %s", refspec, sanitize_url(origin.url))

    def fetch(
        self, refspec: str, auth: "AuthHandle", remote: str = DefaultNames.RemoteName
    ) -> FetchOutcome:
        origin = self._get_remote(remote)
        before = self.ref_snapshot()
        prepare_auth(self.repo.git, auth, origin.url)
        try:
            with self.repo.git.custom_environment(**auth.environment()):
                # --update-head-ok: refs/*:refs/* includes the checked out branch
                self.repo.git.fetch(origin.name, refspec, update_head_ok=True)
        except git.exc.GitCommandError as err:
            raise RemoteOperationFailure(f"git fetch of {refspec} failed: {_error_detail(err)}")
        # "already up to date" isn't an error, it just means no ref moved
        updated = self.ref_snapshot() != before
        outcome = FetchOutcome.UPDATED if updated else FetchOutcome.UP_TO_DATE
        logger.debug("fetched %s from %s: %s", refspec, sanitize_url(origin.url), outcome.value)
        return outcome

    def walk_ancestors(self, from_commit: Union[str, Commit]) -> Iterator[Commit]:
        """Yield every commit reachable from ``from_commit``, following all parents."""
        try:
            yield from self.repo.iter_commits(from_commit)
        except (ValueError, git.exc.GitCommandError) as err:
            raise ResolutionFailure(f"failed walking history from {from_commit}: {_error_detail(err)}")

    def contains_commit(self, tip: Union[str, Commit], commit: str) -> bool:
        return any(c.hexsha == commit for c in self.walk_ancestors(tip))
