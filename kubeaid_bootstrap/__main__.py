#!/usr/bin/env python
# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Bootstraps a cluster's GitOps configuration in a KubeAid config repository.

Generated files are pushed to a new branch; once that branch is merged into
the default branch the root ArgoCD app is applied to the management cluster.
"""
import logging
import os
import shutil
import signal
import sys
import threading
import time
import traceback
from typing import Optional

from . import DefaultNames, __version__, logs
from .auth import select_auth_method
from .bootstrap import Bootstrap
from .config import load_config
from .logs import Levels
from .prerequisites import ensure_prerequisites_installed
from .util import BootstrapError, make_temp_dir

import rich_click as click

# see https://github.com/ewels/rich-click/blob/main/docs/documentation/configuration.md
click.rich_click.STYLE_METAVAR = "dark_orange"
click.rich_click.STYLE_OPTION_ENVVAR = "dim dark_orange"
click.rich_click.STYLE_OPTION = "green"
click.rich_click.STYLE_COMMAND = "bold green"
if os.environ.get("PY_COLORS") == "0":
    click.rich_click.COLOR_SYSTEM = None  # disable colors
click.rich_click.OPTION_ENVVAR_FIRST = False
click.rich_click.ENVVAR_STRING = "(${})"
click.rich_click.OPTION_GROUPS = {
    "kubeaid-bootstrap": [
        {
            "name": "Merge Options",
            "options": ["--poll-interval", "--merge-timeout"],
        },
        {
            "name": "Logging",
            "options": ["--verbose", "--quiet", "--loglevel", "--logfile"],
        },
    ],
}


class StepFailed(click.ClickException):
    exit_code = 1

    def __init__(self, error: BootstrapError):
        super().__init__(str(error))
        self.error = error

    def format_message(self) -> str:
        if self.error.step:
            return f"❌ Failed {self.error.step}: {self.message}"
        return f"❌ {self.message}"

    def show(self, file=None) -> None:
        click.secho(self.format_message(), fg="red", err=True)


def detect_log_level(loglevel: Optional[str], quiet: bool, verbose: int) -> Levels:
    if quiet:
        effective_log_level = Levels.CRITICAL
    else:
        loglevel_env = os.getenv("KUBEAID_LOGGING")
        if loglevel_env:
            effective_log_level = Levels[loglevel_env.upper()]
        else:
            levels = [Levels.INFO, Levels.VERBOSE, Levels.DEBUG, Levels.TRACE]
            effective_log_level = levels[min(verbose, 3)]
    if loglevel:
        effective_log_level = Levels[loglevel.upper()]
    return effective_log_level


def detect_verbose_level(effective_log_level: Levels) -> int:
    if effective_log_level is Levels.VERBOSE:
        verbose = 1
    elif effective_log_level is Levels.DEBUG:
        verbose = 2
    elif effective_log_level is Levels.TRACE:
        verbose = 3
    elif effective_log_level is Levels.CRITICAL:
        verbose = -1
    else:
        verbose = 0
    return verbose


def _exit_on_sigterm(signum, frame):
    # turn SIGTERM into a normal exit so the workspace cleanup runs
    raise SystemExit(128 + signum)


def _print_version(ctx, param, value):
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"kubeaid-bootstrap version {__version__()}")
    ctx.exit()


@click.command("kubeaid-bootstrap")
@click.pass_context
@click.option(
    "--config-file",
    required=True,
    envvar="KUBEAID_CONFIG_FILE",
    show_envvar=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to the YAML config file",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help=f"Seconds to wait between checks for the merge (Default: {DefaultNames.PollInterval:g})",
)
@click.option(
    "--merge-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Give up waiting for the merge after this many seconds (Default: wait forever)",
)
@click.option(
    "--no-install",
    default=False,
    is_flag=True,
    help="Fail instead of offering to install missing prerequisites.",
)
@click.option(
    "--skip-prerequisites",
    default=False,
    is_flag=True,
    envvar="KUBEAID_SKIP_PREREQUISITES",
    help="Don't check whether the required CLI tools are installed.",
)
@click.option(
    "--tmp",
    envvar="KUBEAID_TMPDIR",
    show_envvar=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory for creating the temporary workspace",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    metavar="",
    help="Verbose mode (-vv or -vvv for more)",
)
@click.option(
    "-q",
    "--quiet",
    default=False,
    is_flag=True,
    help="Only output critical errors to the stdout",
)
@click.option(
    "--loglevel",
    envvar="KUBEAID_LOGGING",
    show_envvar=True,
    help="One of trace debug verbose warning info error critical (overrides -v)",
)
@click.option(
    "--logfile",
    default=None,
    envvar="KUBEAID_LOGFILE",
    show_envvar=True,
    help="Log messages to file (at DEBUG level)",
)
@click.option(
    "--version",
    is_flag=True,
    expose_value=False,
    is_eager=True,
    callback=_print_version,
    help="Print the current version and exit.",
)
def cli(
    ctx,
    config_file,
    poll_interval=None,
    merge_timeout=None,
    no_install=False,
    skip_prerequisites=False,
    tmp=None,
    verbose=0,
    quiet=False,
    loglevel=None,
    logfile=None,
):
    """Bootstrap a cluster's GitOps configuration in a KubeAid config repository."""
    ctx.ensure_object(dict)
    started_at = int(time.time())
    if tmp is not None:
        os.environ["KUBEAID_TMPDIR"] = tmp
    effective_log_level = detect_log_level(loglevel, quiet, verbose)
    ctx.obj["verbose"] = detect_verbose_level(effective_log_level)
    logs.add_log_file(logfile or logs.get_tmplog_path(), effective_log_level)
    logs.set_console_log_level(effective_log_level)
    logging.debug("initialized logging")

    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, _exit_on_sigterm)
        ctx.call_on_close(lambda: signal.signal(signal.SIGTERM, previous_handler))

    # the workspace (including the cloned repositories) is removed on every exit path
    workspace = make_temp_dir(prefix=f"{DefaultNames.TempDirPrefix}{started_at}-")
    ctx.call_on_close(lambda: shutil.rmtree(workspace, ignore_errors=True))
    ctx.obj["workspace"] = workspace

    logging.info("running the kubeaid cluster bootstrap script")
    try:
        if not skip_prerequisites:
            ensure_prerequisites_installed(interactive=not no_install)
        config = load_config(config_file).with_overrides(
            poll_interval=poll_interval, merge_timeout=merge_timeout
        )
        auth = select_auth_method(config.git, askpass_dir=workspace)
        Bootstrap(config, auth, workspace, started_at).run()
    except BootstrapError as err:
        logging.debug("bootstrap failed", exc_info=True)
        raise StepFailed(err)
    logging.info("finished running the kubeaid cluster bootstrap script")


def main():
    obj = {}
    try:
        rv = cli(standalone_mode=False, obj=obj)
        sys.exit(rv or 0)
    except click.Abort:
        click.secho("Aborted!", fg="red", err=True)
        sys.exit(1)
    except click.ClickException as e:
        if obj.get("verbose", 0) > 0:
            traceback.print_exc(file=sys.stderr)
        e.show()
        sys.exit(e.exit_code)
    except Exception as err:
        if obj.get("verbose", 0) > 0:
            traceback.print_exc(file=sys.stderr)
        else:
            click.secho("Exiting with error: " + str(err), fg="red", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
