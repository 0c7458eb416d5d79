"""
Logging for the bootstrap run.

Adds the VERBOSE and TRACE levels behind -v/-vv/-vvv, a rich console
handler and an optional log file. The ``SensitiveFilter`` on both redacts git
passwords, ssh passphrases and ArgoCD tokens wrapped in ``sensitive_str``.
"""
import collections.abc
import logging
import logging.config
from enum import IntEnum
import os
import tempfile
import types
from typing import Any, Union, cast

from rich.console import Console

DEFAULT_TRUNCATE_LENGTH = 748

LOG_FORMAT = "[%(asctime)s] %(name)s:%(levelname)s: %(message)s"


def truncate(s: str, max: int = DEFAULT_TRUNCATE_LENGTH) -> str:
    if not s:
        return ""
    if len(s) > max:
        return f"{s[:max//2]} [{len(s)} omitted...]  {s[-max//2:]}"
    return s


class Levels(IntEnum):
    CRITICAL = logging.CRITICAL
    ERROR = logging.ERROR
    WARNING = logging.WARNING
    INFO = logging.INFO
    VERBOSE = 15
    DEBUG = logging.DEBUG
    TRACE = 5


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"file": {"format": LOG_FORMAT}},
    "filters": {
        "sensitive": {
            "()": "kubeaid_bootstrap.logs.SensitiveFilter",
        }
    },
    "handlers": {
        "console": {
            "class": "kubeaid_bootstrap.logs.ColorHandler",
            "level": logging.INFO,
            "filters": ["sensitive"],
        },
    },
    "loggers": {
        # GitPython logs every command it runs at DEBUG
        "git": {"level": logging.INFO},
    },
    "root": {"level": Levels.TRACE, "handlers": ["console"]},
}


class LogExtraLevels:
    def trace(self, msg: str, *args: object, **kwargs: Any) -> None:
        self.log(Levels.TRACE.value, msg, *args, **kwargs)  # type: ignore

    def verbose(self, msg: str, *args: object, **kwargs: Any) -> None:
        self.log(Levels.VERBOSE.value, msg, *args, **kwargs)  # type: ignore


class BootstrapLogger(logging.Logger, LogExtraLevels):
    pass


def getLogger(name: str) -> BootstrapLogger:
    return cast(BootstrapLogger, logging.getLogger(name))


PY_COLORS = os.environ.get("PY_COLORS") != "0"


def getConsole(**kwargs) -> Console:
    global PY_COLORS
    PY_COLORS = os.environ.get("PY_COLORS") != "0"
    # soft wrap so rich doesn't break long git urls and commands
    return Console(soft_wrap=True, force_terminal=PY_COLORS, **kwargs)


class ColorHandler(logging.StreamHandler):
    # https://rich.readthedocs.io/en/stable/appendix/colors.html
    RICH_STYLE_LEVEL = {
        Levels.CRITICAL: "white on bright_red",
        Levels.ERROR: "white on red",
        Levels.WARNING: "white on dark_orange",
        Levels.INFO: "white on blue",
        Levels.VERBOSE: "white on bright_blue",
        Levels.DEBUG: "white on black",
        Levels.TRACE: "white on bright_black",
    }

    def emit(self, record: logging.LogRecord) -> None:
        message = self.format(record)
        if not record.exc_info and not record.stack_info:
            truncate_length = getattr(record, "truncate", DEFAULT_TRUNCATE_LENGTH)
            if truncate_length:
                message = truncate(message, truncate_length)
        try:
            level = Levels[record.levelname]
        except KeyError:
            level = Levels.INFO
        try:
            console = getConsole(file=self.stream)
            console.print(
                f"[{self.RICH_STYLE_LEVEL[level]}] {level.name.center(8)}[/]", end=""
            )
            console.print(f" {record.name.upper()}", end="")
            console.print(f" {message}", markup=False)
        except Exception:
            if os.environ.get("KUBEAID_RAISE_LOGGING_EXCEPTIONS"):
                raise
            self.stream.write(f"Log error: exception while logging {message}")


class sensitive:
    """Base class for marking a value as sensitive.
    Sensitive values are redacted when they are logged.
    """

    redacted_str = "<<REDACTED>>"

    def __sensitive__(self) -> bool:
        return True


def is_sensitive(obj: object) -> bool:
    test = getattr(obj, "__sensitive__", None)
    if test and isinstance(test, types.MethodType):
        return test()
    elif isinstance(obj, collections.abc.Mapping):
        return any(is_sensitive(i) for i in obj.values())
    elif isinstance(obj, collections.abc.MutableSequence):
        return any(is_sensitive(i) for i in obj)
    return False


class SensitiveFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, collections.abc.Mapping):
            record.args = {
                self.redact(k): self.redact(v) for k, v in record.args.items()  # type: ignore
            }
        else:
            if record.args is not None:
                record.args = tuple(self.redact(a) for a in record.args)
        return True

    @staticmethod
    def redact(value: Union[sensitive, str, object]) -> Union[str, object]:
        return sensitive.redacted_str if is_sensitive(value) else value


def initialize_logging() -> None:
    logging.setLoggerClass(BootstrapLogger)
    logging.captureWarnings(True)
    logging.addLevelName(Levels.TRACE.value, Levels.TRACE.name)
    logging.addLevelName(Levels.VERBOSE.value, Levels.VERBOSE.name)
    if os.getenv("KUBEAID_LOGGING"):
        LOGGING["handlers"]["console"]["level"] = Levels[  # type: ignore
            os.getenv("KUBEAID_LOGGING").upper()  # type: ignore
        ]
    logging.config.dictConfig(LOGGING)
    if os.getenv("KUBEAID_LOG_FORMAT"):
        formatter = logging.Formatter(os.getenv("KUBEAID_LOG_FORMAT"))
        logging.getLogger().handlers[0].setFormatter(formatter)


def set_console_log_level(log_level: int) -> None:
    LOGGING["handlers"]["console"]["level"] = log_level  # type: ignore
    LOGGING["incremental"] = True
    logging.config.dictConfig(LOGGING)


def get_console_log_level() -> Levels:
    return LOGGING["handlers"]["console"]["level"]  # type: ignore


def get_tmplog_path() -> str:
    # mktemp is safe here, we just want a random file path to write too
    return tempfile.mktemp("-kubeaid-bootstrap.log", dir=os.environ.get("KUBEAID_TMPDIR"))


def add_log_file(filename: str, console_level: Levels = Levels.INFO) -> str:
    dir = os.path.dirname(filename)
    if dir and not os.path.isdir(dir):
        os.makedirs(dir)

    handler = logging.FileHandler(filename)
    handler.setFormatter(logging.Formatter(os.getenv("KUBEAID_LOG_FORMAT") or LOG_FORMAT))
    handler.setLevel(min(console_level, Levels.DEBUG))
    handler.addFilter(SensitiveFilter())
    logging.getLogger().addHandler(handler)
    return filename
