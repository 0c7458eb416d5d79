# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
import os
import shlex
import subprocess
from typing import List, Mapping, Optional, Union

from .logs import getLogger
from .util import CommandError, clean_output, which

logger = getLogger("kubeaid")


def _cmd(cmd: Union[str, List[str]]):
    if not isinstance(cmd, str):
        return " ".join(shlex.quote(str(arg)) for arg in cmd), [str(arg) for arg in cmd]
    return cmd, shlex.split(cmd)


def run_command(
    cmd: Union[str, List[str]],
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
    shell: bool = False,
    timeout: Optional[float] = None,
) -> str:
    """
    Run an external program and return its combined stdout.

    Raises :class:`CommandError` if the program is missing, times out or
    exits non-zero.
    """
    cmdStr, args = _cmd(cmd)
    if not shell and not which(args[0]) and not os.access(args[0], os.X_OK):
        raise CommandError(f"'{args[0]}' is not executable or not found in PATH")
    if env is not None:
        env = dict(os.environ, **env)
    logger.verbose("executing command: %s", cmdStr)
    try:
        completed = subprocess.run(
            # follow recommendation to use string with shell, list without
            cmdStr if shell else args,
            shell=shell,
            cwd=cwd,
            env=env,
            input=input.encode() if input is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise CommandError(f'command "{cmdStr}" timed out after {timeout} seconds')
    except OSError as err:
        raise CommandError(f'failed executing "{cmdStr}": {err}')
    stdout = clean_output(completed.stdout.decode(errors="replace"))
    stderr = clean_output(completed.stderr.decode(errors="replace"))
    if completed.returncode:
        logger.debug("command %s failed with %s: %s", cmdStr, completed.returncode, stderr)
        raise CommandError(
            f'command "{cmdStr}" exited with {completed.returncode}: {stderr.strip() or stdout.strip()}',
            completed.returncode,
            stdout,
            stderr,
        )
    logger.debug("command output: %s", stdout)
    return stdout
