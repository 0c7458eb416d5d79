import os
import os.path
import shutil
import threading
import unittest

import pytest

from kubeaid_bootstrap.util import RemoteOperationFailure, ResolutionFailure
from kubeaid_bootstrap.watcher import MergeWatcher, WatchState
from kubeaid_bootstrap.workflow import BranchIsolator, ChangeRecorder, Publisher

from .utils import LocalAuth, advance_branch, clone_workspace, create_remote, merge_branch, write_files

BRANCH = "kubeaid-test-1700000000"


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedEvent(threading.Event):
    """
    Stands in for the sleep between polls: instead of waiting it advances
    the fake clock and runs the next scripted action.
    """

    def __init__(self, clock, actions=()):
        super().__init__()
        self.clock = clock
        self.actions = list(actions)
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        self.clock.now += timeout or 0
        if self.actions:
            self.actions.pop(0)()
        return self.is_set()


class MergeWatcherTest(unittest.TestCase):
    @pytest.fixture(autouse=True)
    def _tmp(self, tmp_path):
        self.tmp = str(tmp_path)

    def setUp(self):
        self.remote = create_remote(self.tmp)
        self.repo = clone_workspace(self.remote, os.path.join(self.tmp, "workspace"))
        self.auth = LocalAuth()
        BranchIsolator(self.repo).isolate(BRANCH)
        write_files(self.repo.working_dir, {"k8s/test/argocd-apps/Chart.yaml": "name: argocd-apps\n"})
        self.record = ChangeRecorder(self.repo).record("test")
        Publisher(self.repo, self.auth).publish(self.record)
        self.merger_dir = os.path.join(self.tmp, "merger")
        self.clock = FakeClock()

    def make_watcher(self, interval=10):
        return MergeWatcher(
            self.repo,
            self.auth,
            "main",
            self.record.hexsha,
            interval=interval,
            branch=BRANCH,
            clock=self.clock,
        )

    def merge(self, extra_commits=0):
        return merge_branch(self.remote, self.merger_dir, BRANCH, extra_commits=extra_commits)

    def test_not_merged(self):
        watcher = self.make_watcher()
        assert watcher.poll() is WatchState.AWAITING_MERGE
        # other changes to the default branch don't count as a merge
        advance_branch(self.remote, os.path.join(self.tmp, "other"))
        assert watcher.poll() is WatchState.AWAITING_MERGE
        assert not watcher.is_merged()
        assert watcher.polls == 2

    def test_merge_behind_tip(self):
        watcher = self.make_watcher()
        assert watcher.poll() is WatchState.AWAITING_MERGE
        tip = self.merge(extra_commits=3)
        assert watcher.poll() is WatchState.MERGED
        assert self.repo.resolve_ref("refs/heads/main") == tip
        # merged is final
        assert watcher.poll() is WatchState.MERGED
        assert watcher.polls == 2

    def test_wait_detects_merge_on_next_poll(self):
        watcher = self.make_watcher()
        cancel = ScriptedEvent(self.clock, [lambda: None, self.merge])
        assert watcher.wait(cancel=cancel) is WatchState.MERGED
        # one poll before each sleep, the third poll sees the merge
        assert watcher.polls == 3
        assert cancel.waits == [10, 10]

    def test_wait_already_merged(self):
        self.merge()
        watcher = self.make_watcher()
        cancel = ScriptedEvent(self.clock)
        assert watcher.wait(cancel=cancel) is WatchState.MERGED
        assert watcher.polls == 1
        assert cancel.waits == []

    def test_wait_timeout(self):
        watcher = self.make_watcher(interval=10)
        cancel = ScriptedEvent(self.clock)
        deadline = self.clock() + 25
        assert watcher.wait(deadline=deadline, cancel=cancel) is WatchState.TIMEOUT
        assert watcher.state is WatchState.TIMEOUT
        # the last sleep is cut short by the deadline
        assert cancel.waits == [10, 10, 5]
        # a final poll happens once the deadline passes
        assert watcher.polls == 4

    def test_merge_during_last_sleep(self):
        watcher = self.make_watcher(interval=10)
        cancel = ScriptedEvent(self.clock, [lambda: None, self.merge])
        deadline = self.clock() + 20
        assert watcher.wait(deadline=deadline, cancel=cancel) is WatchState.MERGED

    def test_cancel(self):
        watcher = self.make_watcher()
        cancel = ScriptedEvent(self.clock)
        cancel.actions.append(cancel.set)
        assert watcher.wait(cancel=cancel) is WatchState.TIMEOUT
        assert watcher.polls == 1

    def test_already_cancelled(self):
        watcher = self.make_watcher()
        cancel = threading.Event()
        cancel.set()
        assert watcher.wait(cancel=cancel) is WatchState.TIMEOUT
        assert watcher.polls == 0

    def test_real_wait_with_short_interval(self):
        watcher = MergeWatcher(
            self.repo, self.auth, "main", self.record.hexsha, interval=0.01, branch=BRANCH
        )
        timer = threading.Timer(0.05, self.merge)
        timer.start()
        try:
            assert watcher.wait() is WatchState.MERGED
        finally:
            timer.join()

    def test_fetch_failure_propagates(self):
        watcher = self.make_watcher()
        shutil.rmtree(self.remote)
        with self.assertRaises(RemoteOperationFailure):
            watcher.wait(cancel=ScriptedEvent(self.clock))
        assert watcher.state is WatchState.AWAITING_MERGE

    def test_missing_default_branch(self):
        watcher = MergeWatcher(self.repo, self.auth, "trunk", self.record.hexsha, clock=self.clock)
        with self.assertRaises(ResolutionFailure):
            watcher.poll()
