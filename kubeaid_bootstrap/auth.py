# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Git authentication handles.

Exactly one handle is selected per run (see :func:`select_auth_method`) and it
is passed unchanged to every remote git operation.
"""
import abc
import os
import os.path
import shlex
import stat
import tempfile
from typing import Dict, Mapping, Optional

import git

from .config import GitConfig
from .logs import getLogger
from .repo import add_transient_credentials
from .util import AuthError, sensitive_str

logger = getLogger("kubeaid")

ASKPASS_SCRIPT = """#!/bin/sh
printf '%s\\n' "$KUBEAID_SSH_PASSPHRASE"
"""


class AuthHandle(abc.ABC):
    name = ""

    def environment(self) -> Dict[str, str]:
        """Environment variables to set while running a remote git command."""
        return {}

    def prepare(self, gitcmd: git.Git, url: str) -> None:
        """Called right before a remote git command is issued with ``gitcmd``."""

    def __str__(self) -> str:
        return self.name


class SSHKeyAuth(AuthHandle):
    name = "SSH private key"

    def __init__(self, private_key: str, passphrase: str = "", askpass_dir: Optional[str] = None):
        if not os.path.isfile(private_key) or not os.access(private_key, os.R_OK):
            raise AuthError(f"SSH private key {private_key} doesn't exist or isn't readable")
        self.private_key = os.path.abspath(private_key)
        self.passphrase = sensitive_str(passphrase)
        self._askpass: Optional[str] = None
        if passphrase:
            self._askpass = self._write_askpass(askpass_dir)

    @staticmethod
    def _write_askpass(dir: Optional[str]) -> str:
        fd, path = tempfile.mkstemp(prefix="askpass-", suffix=".sh", dir=dir)
        with os.fdopen(fd, "w") as f:
            f.write(ASKPASS_SCRIPT)
        os.chmod(path, stat.S_IRWXU)
        return path

    def environment(self) -> Dict[str, str]:
        env = dict(
            GIT_SSH_COMMAND=f"ssh -i {shlex.quote(self.private_key)} -o IdentitiesOnly=yes",
        )
        if self._askpass:
            env.update(
                SSH_ASKPASS=self._askpass,
                SSH_ASKPASS_REQUIRE="force",
                KUBEAID_SSH_PASSPHRASE=self.passphrase,
                # older ssh clients only use SSH_ASKPASS if DISPLAY is set
                DISPLAY=os.environ.get("DISPLAY", ":0"),
            )
        return env


class PasswordAuth(AuthHandle):
    name = "password"

    def __init__(self, username: str, password: str):
        if not username:
            raise AuthError("a git username is required for password authentication")
        self.username = username
        self.password = sensitive_str(password)

    def environment(self) -> Dict[str, str]:
        # fail instead of hanging on a credentials prompt
        return dict(GIT_TERMINAL_PROMPT="0")

    def prepare(self, gitcmd: git.Git, url: str) -> None:
        if "://" in url and not url.startswith("file:"):
            add_transient_credentials(gitcmd, url, self.username, self.password)


class SSHAgentAuth(AuthHandle):
    name = "SSH agent"

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        environ = os.environ if environ is None else environ
        sock = environ.get("SSH_AUTH_SOCK")
        if not sock:
            raise AuthError("ssh agent failed: SSH_AUTH_SOCK is not set")
        self.sock = sock

    def environment(self) -> Dict[str, str]:
        return dict(SSH_AUTH_SOCK=self.sock)


def select_auth_method(
    config: GitConfig,
    environ: Optional[Mapping[str, str]] = None,
    askpass_dir: Optional[str] = None,
) -> AuthHandle:
    """
    Precedence: an explicit SSH private key, then an explicit password,
    then the SSH agent.
    """
    auth: AuthHandle
    if config.ssh_private_key:
        # the password doubles as the key's passphrase
        auth = SSHKeyAuth(config.ssh_private_key, config.password, askpass_dir)
    elif config.password:
        auth = PasswordAuth(config.username, config.password)
    else:
        auth = SSHAgentAuth(environ)
    logger.info("using %s for git authentication", auth)
    return auth
