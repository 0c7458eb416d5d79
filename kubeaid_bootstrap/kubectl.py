# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
from typing import List

from .logs import getLogger
from .shell import run_command

logger = getLogger("kubeaid")


def _kubeconfig_args(kubeconfig: str) -> List[str]:
    return ["--kubeconfig", kubeconfig] if kubeconfig else []


def use_context(kubeconfig: str, context: str) -> str:
    logger.info("setting context to %s in kubeconfig at %s", context, kubeconfig or "default")
    return run_command(["kubectl", "config", "use-context", context] + _kubeconfig_args(kubeconfig))


def apply_file(path: str, kubeconfig: str) -> str:
    # not using a kubernetes client library, we only need to apply one file
    output = run_command(["kubectl", "apply", "-f", path] + _kubeconfig_args(kubeconfig))
    logger.info("kubectl apply -f %s: %s", path, output.strip())
    return output
