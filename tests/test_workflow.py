import datetime
import os
import os.path
import threading
import unittest

import git
import pytest

from kubeaid_bootstrap.util import BranchAlreadyExists, LocalGitFailure, RemoteOperationFailure
from kubeaid_bootstrap.watcher import WatchState
from kubeaid_bootstrap.workflow import (
    BranchIsolator,
    ChangeRecorder,
    ChangeWorkflow,
    CommitRecord,
    Publisher,
    cluster_pathspec,
    make_branch_name,
)

from .utils import LocalAuth, clone_workspace, commit_on_branch, create_remote, merge_branch, write_files

CLUSTER_FILES = {
    "k8s/test/argocd-apps/Chart.yaml": "apiVersion: v2\nname: argocd-apps\n",
    "k8s/test/argocd-apps/templates/root.yaml": "kind: Application\n",
    "k8s/test/sealed-secrets/argo-cd/kubeaid-config.yaml": "kind: SealedSecret\n",
}


def test_make_branch_name():
    assert make_branch_name("kubeaid", "test", 1700000000) == "kubeaid-test-1700000000"


def test_cluster_pathspec():
    assert cluster_pathspec("test") == "k8s/test/*"


class WorkflowTest(unittest.TestCase):
    @pytest.fixture(autouse=True)
    def _tmp(self, tmp_path):
        self.tmp = str(tmp_path)

    def setUp(self):
        self.remote = create_remote(self.tmp)
        self.repo = clone_workspace(self.remote, os.path.join(self.tmp, "workspace"))
        self.auth = LocalAuth()

    def test_isolate(self):
        before = self.repo.revision
        assert BranchIsolator(self.repo).isolate("kubeaid-test-1") == "kubeaid-test-1"
        assert self.repo.active_branch == "kubeaid-test-1"
        # the new branch starts at the default branch's tip
        assert self.repo.revision == before

    def test_isolate_existing_local_branch(self):
        self.repo.repo.git.branch("kubeaid-test-1")
        with self.assertRaises(BranchAlreadyExists) as err:
            BranchIsolator(self.repo).isolate("kubeaid-test-1")
        assert err.exception.refs == ["refs/heads/kubeaid-test-1"]
        # nothing was checked out
        assert self.repo.active_branch == "main"

    def test_isolate_existing_remote_branch(self):
        other = git.Repo.clone_from(self.remote, os.path.join(self.tmp, "other"))
        commit_on_branch(other, "kubeaid-test-1", {"x.txt": "x"}, "someone else's branch")
        other.git.push("origin", "kubeaid-test-1")
        self.repo.repo.git.fetch("origin")

        with self.assertRaises(BranchAlreadyExists) as err:
            BranchIsolator(self.repo).isolate("kubeaid-test-1")
        assert err.exception.refs == ["refs/remotes/origin/kubeaid-test-1"]
        assert self.repo.active_branch == "main"

    def test_record(self):
        BranchIsolator(self.repo).isolate("kubeaid-test-1")
        write_files(self.repo.working_dir, CLUSTER_FILES)
        # outside the cluster directory, must not be committed
        write_files(self.repo.working_dir, {"k8s/other/values.yaml": "b: 2\n", "notes.txt": "x"})
        when = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)

        record = ChangeRecorder(self.repo).record("test", when=when)

        assert record.branch == "kubeaid-test-1"
        assert record.message == "KubeAid bootstrap setup for argo-cd applications on test\n"
        commit = self.repo.repo.commit(record.hexsha)
        assert commit.hexsha == self.repo.revision
        assert commit.author.name == "KubeAid Installer"
        assert commit.author.email == "info@obmondo.com"
        assert commit.committer.name == "KubeAid Installer"
        assert commit.authored_datetime.timestamp() == when.timestamp()
        assert commit.message == record.message

        tree_files = sorted(
            blob.path for blob in commit.tree.traverse() if blob.type == "blob"
        )
        assert tree_files == sorted(["README"] + list(CLUSTER_FILES))
        # file content survives unchanged
        for path, content in CLUSTER_FILES.items():
            assert (commit.tree / path).data_stream.read().decode() == content

    def test_record_nothing_to_commit(self):
        BranchIsolator(self.repo).isolate("kubeaid-test-1")
        write_files(self.repo.working_dir, {"k8s/test/values.yaml": "a: 1\n"})
        recorder = ChangeRecorder(self.repo)
        recorder.record("test")
        before = self.repo.revision
        # the same files again: nothing new is staged
        with self.assertRaises(LocalGitFailure):
            recorder.record("test")
        assert self.repo.revision == before

    def test_publish(self):
        BranchIsolator(self.repo).isolate("kubeaid-test-1")
        write_files(self.repo.working_dir, CLUSTER_FILES)
        record = ChangeRecorder(self.repo).record("test")

        Publisher(self.repo, self.auth).publish(record)

        remote = git.Repo(self.remote)
        assert remote.rev_parse("refs/heads/kubeaid-test-1").hexsha == record.hexsha
        # the default branch is untouched
        assert remote.rev_parse("refs/heads/main").hexsha != record.hexsha

    def test_publish_rejected(self):
        other = git.Repo.clone_from(self.remote, os.path.join(self.tmp, "other"))
        commit_on_branch(other, "kubeaid-test-1", {"x.txt": "x"}, "someone else's branch")
        other.git.push("origin", "kubeaid-test-1")

        # created before the remote branch was seen
        self.repo.create_and_checkout_branch("kubeaid-test-1")
        write_files(self.repo.working_dir, CLUSTER_FILES)
        record = ChangeRecorder(self.repo).record("test")
        with self.assertRaises(RemoteOperationFailure):
            Publisher(self.repo, self.auth).publish(record)
        # the remote branch was not overwritten
        assert git.Repo(self.remote).rev_parse("refs/heads/kubeaid-test-1").hexsha != record.hexsha

    def test_publish_unknown_branch(self):
        record = CommitRecord(self.repo.revision, "no-such-branch", "")
        with self.assertRaises(RemoteOperationFailure):
            Publisher(self.repo, self.auth).publish(record)

    def test_change_workflow(self):
        branch = make_branch_name("kubeaid", "test", 1700000000)
        workflow = ChangeWorkflow(self.repo, self.auth, "test", branch, poll_interval=0.01)
        assert workflow.default_branch == "main"

        assert workflow.isolate() == "kubeaid-test-1700000000"
        write_files(self.repo.working_dir, CLUSTER_FILES)
        record = workflow.commit()
        assert workflow.publish() is record

        merger_dir = os.path.join(self.tmp, "merger")
        merge_branch(self.remote, merger_dir, branch, extra_commits=2)

        assert workflow.wait_for_merge() is WatchState.MERGED
        assert workflow.watcher.polls == 1
        assert self.repo.contains_commit(self.repo.resolve_ref("refs/heads/main"), record.hexsha)

    def test_end_to_end(self):
        branch = make_branch_name("kubeaid", "demo", 1700000000)
        workflow = ChangeWorkflow(self.repo, self.auth, "demo", branch, poll_interval=0.01)
        workflow.isolate()
        assert self.repo.active_branch == "kubeaid-demo-1700000000"
        files = {path.replace("k8s/test/", "k8s/demo/"): content for path, content in CLUSTER_FILES.items()}
        write_files(self.repo.working_dir, files)
        record = workflow.commit()
        workflow.publish()
        assert git.Repo(self.remote).rev_parse(f"refs/heads/{branch}").hexsha == record.hexsha

        merged = []

        class MergeWhileSleeping(threading.Event):
            def wait(inner, timeout=None):
                merged.append(merge_branch(self.remote, os.path.join(self.tmp, "merger"), branch))
                return False

        assert workflow.wait_for_merge(cancel=MergeWhileSleeping()) is WatchState.MERGED
        # the first poll saw no merge, the second found it through the merge commit
        assert workflow.watcher.polls == 2
        merge_commit = self.repo.repo.commit(merged[0])
        assert record.hexsha in [parent.hexsha for parent in merge_commit.parents]
