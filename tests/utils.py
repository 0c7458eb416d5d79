import os
import os.path
from typing import Dict, Optional

import git

from kubeaid_bootstrap.auth import AuthHandle
from kubeaid_bootstrap.repo import GitRepo


class LocalAuth(AuthHandle):
    """Auth handle for file-system remotes, which need no credentials."""

    name = "local"

    def __init__(self):
        self.prepared = []

    def prepare(self, gitcmd, url):
        self.prepared.append(url)


def _set_identity(repo: git.Repo, name: str = "Reviewer", email: str = "reviewer@example.com"):
    with repo.config_writer() as writer:
        writer.set_value("user", "name", name)
        writer.set_value("user", "email", email)


def write_files(base: str, files: Dict[str, str]) -> None:
    for path, content in files.items():
        filepath = os.path.join(base, path)
        os.makedirs(os.path.dirname(filepath), exist_ok=True)
        with open(filepath, "w") as f:
            f.write(content)


def create_remote(base: str, files: Optional[Dict[str, str]] = None, branch: str = "main") -> str:
    """Create a bare repository with one commit on ``branch``; returns its path."""
    seed_dir = os.path.join(base, "seed")
    seed = git.Repo.init(seed_dir, initial_branch=branch)
    _set_identity(seed)
    write_files(seed_dir, files or {"README": "just another git repository\n"})
    seed.git.add("--all")
    seed.index.commit("Initial Commit")
    remote = os.path.join(base, "remote.git")
    seed.clone(remote, bare=True)
    return remote


def clone_workspace(remote: str, path: str) -> GitRepo:
    return GitRepo.clone(remote, path, LocalAuth())


def commit_on_branch(repo: git.Repo, branch: str, files: Dict[str, str], message: str) -> str:
    _set_identity(repo)
    repo.git.checkout("-B", branch)
    write_files(repo.working_tree_dir, files)
    repo.git.add("--all")
    repo.index.commit(message)
    return repo.head.commit.hexsha


def merge_branch(
    remote: str,
    workdir: str,
    branch: str,
    target: str = "main",
    extra_commits: int = 0,
) -> str:
    """
    Act as the person merging the pull request: merge ``branch`` into
    ``target`` with a merge commit, optionally add more commits on top,
    and push. Returns the new tip of ``target``.
    """
    if os.path.isdir(workdir):
        merger = git.Repo(workdir)
        merger.git.fetch("origin")
    else:
        merger = git.Repo.clone_from(remote, workdir)
    _set_identity(merger)
    merger.git.checkout(target)
    merger.git.reset("--hard", f"origin/{target}")
    merger.git.merge(f"origin/{branch}", no_ff=True, m=f"Merge branch '{branch}'")
    for i in range(extra_commits):
        write_files(workdir, {f"later-{i}.txt": f"change {i}\n"})
        merger.git.add("--all")
        merger.index.commit(f"later change {i}")
    merger.git.push("origin", target)
    return merger.head.commit.hexsha


def advance_branch(remote: str, workdir: str, target: str = "main") -> str:
    """Push an unrelated commit to ``target``."""
    if os.path.isdir(workdir):
        other = git.Repo(workdir)
        other.git.pull("origin", target)
    else:
        other = git.Repo.clone_from(remote, workdir)
    _set_identity(other)
    other.git.checkout(target)
    write_files(workdir, {"unrelated.txt": "unrelated\n"})
    other.git.add("--all")
    other.index.commit("unrelated change")
    other.git.push("origin", target)
    return other.head.commit.hexsha
