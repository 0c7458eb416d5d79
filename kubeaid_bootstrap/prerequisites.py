# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import click

from .logs import getLogger
from .shell import run_command
from .util import CommandError, PrerequisiteMissing, which

logger = getLogger("kubeaid")

GOJSONTOYAML_INSTALL = """\
set -e
tmp=$(mktemp -d)
cd "$tmp"
wget https://github.com/brancz/gojsontoyaml/releases/download/v0.1.0/gojsontoyaml_0.1.0_darwin_arm64.tar.gz
tar -xvzf gojsontoyaml_0.1.0_darwin_arm64.tar.gz
chmod +x gojsontoyaml
sudo mkdir -p /usr/local/bin
sudo mv ./gojsontoyaml /usr/local/bin
"""


@dataclass(frozen=True)
class InstallationCheck:
    name: str
    # only macOS (homebrew) install commands are known
    install_command: str


INSTALLATION_CHECKS = (
    InstallationCheck("kubectl", "brew install kubectl"),
    InstallationCheck("jsonnet", "brew install jsonnet"),
    InstallationCheck("kubeseal", "brew install kubeseal"),
    InstallationCheck("gojsontoyaml", GOJSONTOYAML_INSTALL),
)


def _prompt(check: InstallationCheck) -> bool:
    return click.confirm(
        f"{check.name} isn't installed in your system. Should I install it for you?",
        default=False,
    )


def ensure_prerequisites_installed(
    checks: Sequence[InstallationCheck] = INSTALLATION_CHECKS,
    interactive: bool = True,
    prompt: Optional[Callable[[InstallationCheck], bool]] = None,
) -> None:
    logger.info("checking whether prerequisites are installed or not")
    prompt = prompt or _prompt
    for check in checks:
        if which(check.name):
            logger.debug("found %s", check.name)
            continue

        logger.error("%s isn't installed in your system", check.name)
        if not interactive or not prompt(check):
            raise PrerequisiteMissing(f"please install {check.name} and rerun the script")

        logger.info("installing %s, by executing command: %s", check.name, check.install_command)
        try:
            output = run_command(check.install_command, shell=True)
        except CommandError as err:
            raise PrerequisiteMissing(f"failed installing {check.name}: {err}")
        logger.verbose(output)
        logger.info("installed %s", check.name)
