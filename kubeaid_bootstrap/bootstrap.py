# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Runs a complete cluster bootstrap against the config repository.
"""
import os.path
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from . import DefaultNames, kubectl
from .auth import AuthHandle
from .config import Config
from .generate import ManifestGenerator
from .logs import getLogger
from .repo import GitRepo
from .util import BootstrapError, ClusterDirExists, MergeTimeout
from .watcher import WatchState
from .workflow import ChangeWorkflow, make_branch_name

logger = getLogger("kubeaid")


@contextmanager
def step(name: str) -> Iterator[None]:
    """Tag any BootstrapError raised inside the block with the step's name."""
    logger.debug("starting step: %s", name)
    try:
        yield
    except BootstrapError as err:
        if not err.step:
            err.step = name
        raise


class Bootstrap:
    def __init__(
        self,
        config: Config,
        auth: AuthHandle,
        workspace: str,
        started_at: Optional[int] = None,
        generator_factory: Callable[..., ManifestGenerator] = ManifestGenerator,
        cancel: Optional[threading.Event] = None,
    ):
        self.config = config
        self.auth = auth
        self.workspace = workspace
        # captured once, the branch name must not change during the run
        self.started_at = int(time.time()) if started_at is None else started_at
        self.generator_factory = generator_factory
        self.cancel = cancel
        self.repo: Optional[GitRepo] = None
        self.workflow: Optional[ChangeWorkflow] = None

    @property
    def repo_dir(self) -> str:
        return os.path.join(self.workspace, DefaultNames.ConfigRepoDirectory)

    @property
    def branch(self) -> str:
        return make_branch_name(
            self.config.branch_prefix, self.config.cluster_name, self.started_at
        )

    def cluster_dir(self) -> str:
        assert self.repo
        return os.path.join(
            self.repo.working_dir,
            DefaultNames.ClusterParentDirectory,
            self.config.cluster_name,
        )

    def deadline(self) -> Optional[float]:
        if self.config.merge_timeout is None:
            return None
        return time.monotonic() + self.config.merge_timeout

    def run(self) -> WatchState:
        config = self.config
        if config.management_cluster_kubectx:
            with step("setting kube context"):
                kubectl.use_context(
                    config.management_cluster_kubeconfig, config.management_cluster_kubectx
                )

        with step("cloning the config repository"):
            self.repo = GitRepo.clone(config.kubeaid_config_repo_url, self.repo_dir, self.auth)

        with step("creating the branch"):
            self.workflow = ChangeWorkflow(
                self.repo,
                self.auth,
                config.cluster_name,
                self.branch,
                poll_interval=config.poll_interval,
            )
            self.workflow.isolate()

        cluster_dir = self.cluster_dir()
        with step("checking the cluster directory"):
            if os.path.exists(cluster_dir):
                raise ClusterDirExists(f"cluster dir {cluster_dir} already exists")

        with step("generating files"):
            generator = self.generator_factory(
                config,
                cluster_dir,
                self.workflow.default_branch,
                self.workspace,
                self.auth,
            )
            generator.generate()

        with step("committing changes"):
            self.workflow.commit()

        with step("pushing changes"):
            self.workflow.publish()

        # The user now needs to open a pull request from the new branch and merge it.
        # Pull requests are specific to the git hosting platform so we can't do it for them.
        with step("waiting for the branch to be merged"):
            state = self.workflow.wait_for_merge(self.deadline(), self.cancel)
            if state is WatchState.TIMEOUT:
                raise MergeTimeout(
                    f"branch '{self.branch}' wasn't merged into "
                    f"'{self.workflow.default_branch}' in time"
                )

        with step("applying the root ArgoCD app"):
            root_app = os.path.join(cluster_dir, "argocd-apps", "templates", "root.yaml")
            kubectl.apply_file(root_app, config.management_cluster_kubeconfig)
        return state
