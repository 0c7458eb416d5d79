# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
import atexit
import base64
import os
import os.path
import shutil
import sys
import tempfile
import traceback
from collections.abc import Mapping
from typing import Any, List, Optional, Tuple

from jsonschema import Draft7Validator
import jsonschema.exceptions
from click.termui import unstyle
import re

from .logs import sensitive, getLogger

logger = getLogger("kubeaid")


class BootstrapError(Exception):
    def __init__(
        self,
        message: object,
        saveStack: bool = False,
        log: bool = False,
        step: Optional[str] = None,
    ) -> None:
        stackInfo = None
        if saveStack:
            (etype, value, tb) = sys.exc_info()
            if value:
                message = str(message) + ": " + str(value)
                stackInfo = (etype, value, tb)
        super().__init__(message)
        self.stackInfo = stackInfo
        # name of the bootstrap step that failed, set by the runner
        self.step = step
        if log:
            logger.error(message, exc_info=True)

    def get_stack_trace(self) -> str:
        if not self.stackInfo:
            return ""
        return "".join(traceback.format_exception(*self.stackInfo))


class PreconditionViolation(BootstrapError):
    pass


class BranchAlreadyExists(PreconditionViolation):
    def __init__(self, branch: str, refs: List[str]) -> None:
        super().__init__(
            f"branch '{branch}' already exists in the repository ({', '.join(refs)})"
        )
        self.branch = branch
        self.refs = refs


class ClusterDirExists(PreconditionViolation):
    pass


class RemoteOperationFailure(BootstrapError):
    pass


class LocalGitFailure(BootstrapError):
    pass


class ResolutionFailure(BootstrapError):
    pass


class ConfigurationError(BootstrapError):
    def __init__(self, message: object, errors: Optional[List[Exception]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AuthError(BootstrapError):
    pass


class CommandError(BootstrapError):
    def __init__(
        self,
        message: object,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class PrerequisiteMissing(BootstrapError):
    pass


class MergeTimeout(BootstrapError):
    pass


class sensitive_str(str, sensitive):
    """Transparent wrapper class to mark a str as sensitive"""

    def __repr__(self) -> str:
        return repr(self.redacted_str)


def find_schema_errors(
    obj: Any, schema: Mapping
) -> Optional[Tuple[str, List[jsonschema.exceptions.ValidationError]]]:
    Draft7Validator.check_schema(schema)
    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(obj))
    error = jsonschema.exceptions.best_match(errors)
    if not error:
        return None
    message = "%s in %s" % (
        error.message,
        "/".join([str(p) for p in error.absolute_path]) or "<root>",
    )
    return message, errors


def make_temp_dir(delete: bool = True, prefix: str = "kubeaid") -> str:
    tempDir = tempfile.mkdtemp(prefix=prefix, dir=os.environ.get("KUBEAID_TMPDIR"))
    if delete:
        atexit.register(lambda: os.path.isdir(tempDir) and shutil.rmtree(tempDir))  # type: ignore
    logger.debug("created temp dir %s", tempDir)
    return tempDir


def which(executable: str) -> Optional[str]:
    return shutil.which(executable)


def encode_base64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def clean_output(value: str) -> str:
    # strips terminal escapes
    return re.sub(r"[\x00-\x08\x0e-\x1f\x7f-\x9f]", "", unstyle(value))
