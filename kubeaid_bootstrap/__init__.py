# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
import os

from kubeaid_bootstrap import logs


# We need to initialize logging before any logger is created
logs.initialize_logging()


def __version__() -> str:
    # a function because this is expensive
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("kubeaid-bootstrap")
    except PackageNotFoundError:
        return "0.0.0"


class DefaultNames:
    BranchPrefix = "kubeaid"
    ClusterParentDirectory = "k8s"
    ConfigRepoDirectory = "kubeaid-config"
    KubeaidRepoDirectory = "kubeaid"
    TempDirPrefix = "kubeaid-bootstrap-script-"
    RemoteName = "origin"
    CommitAuthor = "KubeAid Installer"
    CommitEmail = "info@obmondo.com"
    PollInterval = 10.0


templates_dir = os.path.join(os.path.abspath(os.path.dirname(__file__)), "templates")
