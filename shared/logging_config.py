"""Route launcher log records to a per-user log file.

The file lives at ``~/.coupler/logs/launcher.log`` unless ``COUPLER_LOG_FILE``
names a file or ``COUPLER_LOG_DIR`` names a directory. The user's home
directory is replaced by ``<user_home>`` in every record so a log can be
attached to a bug report as is.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path

LOG_FILE_ENV = "COUPLER_LOG_FILE"
LOG_DIR_ENV = "COUPLER_LOG_DIR"
LOG_NAME = "launcher.log"
USER_HOME_PLACEHOLDER = "<user_home>"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MANAGED = "_coupler_launcher_handler"

_log_path: Path | None = None


class _HomeRedactingFormatter(logging.Formatter):
    def __init__(self, home: Path) -> None:
        super().__init__(_FORMAT, datefmt=_DATE_FORMAT)
        self._pattern = _home_pattern(home)

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        if self._pattern is None:
            return formatted
        return self._pattern.sub(USER_HOME_PLACEHOLDER, formatted)


def _home_pattern(home: Path) -> re.Pattern[str] | None:
    text = os.path.normpath(str(home))
    if text in ("", os.sep, "."):
        return None
    spellings = {text, text.replace("\\", "/"), text.replace("/", "\\")}
    # Longest first so a POSIX spelling never shadows a longer variant.
    alternatives = "|".join(re.escape(item) for item in sorted(spellings, key=len, reverse=True))
    return re.compile(alternatives, re.IGNORECASE if os.name == "nt" else 0)


def launcher_log_path() -> Path:
    """Return where the launcher writes its log file."""

    log_file = os.environ.get(LOG_FILE_ENV)
    if log_file:
        return Path(log_file).expanduser()
    log_dir = os.environ.get(LOG_DIR_ENV)
    if log_dir:
        return Path(log_dir).expanduser() / LOG_NAME
    return Path.home() / ".coupler" / "logs" / LOG_NAME


def configure_launcher_logging(*, verbose: bool = False) -> Path:
    """Attach the launcher's handlers to the root logger and return the log path.

    The file records ``INFO`` and above, or everything when ``verbose`` is set.
    An interactive stderr additionally shows warnings (or everything when
    verbose). Calling again only ever raises the verbosity.
    """

    global _log_path

    file_level = logging.DEBUG if verbose else logging.INFO
    console_level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if _log_path is not None:
        if verbose:
            for handler in _managed_handlers():
                handler.setLevel(logging.DEBUG)
        return _log_path

    log_path = launcher_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _HomeRedactingFormatter(Path.home())

    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    handlers[0].setLevel(file_level)
    if _stderr_is_interactive():
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(console_level)
        handlers.append(console)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _MANAGED, True)
        root.addHandler(handler)

    _log_path = log_path
    logging.getLogger(__name__).info("Writing launcher log to %s", log_path)
    return log_path


def _managed_handlers() -> list[logging.Handler]:
    return [handler for handler in logging.getLogger().handlers if getattr(handler, _MANAGED, False)]


def _stderr_is_interactive() -> bool:
    stream = getattr(sys, "stderr", None)
    if stream is None:
        return False
    try:
        return bool(stream.isatty())
    except (AttributeError, OSError, ValueError):
        return False


def _reset_for_tests() -> None:
    """Detach and close every handler installed by :func:`configure_launcher_logging`."""

    global _log_path

    root = logging.getLogger()
    for handler in _managed_handlers():
        root.removeHandler(handler)
        handler.close()
    _log_path = None


__all__ = [
    "LOG_DIR_ENV",
    "LOG_FILE_ENV",
    "USER_HOME_PLACEHOLDER",
    "configure_launcher_logging",
    "launcher_log_path",
]
