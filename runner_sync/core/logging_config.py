"""Logging setup for runner-sync.

All modules log through ``logging.getLogger(__name__)``; this module wires
the single console handler on the ``runner_sync`` package logger:

    [2026-10-19 09:14:03] [runner-sync@1.0.0] INFO Found previous runner: ci-runner-7

A ``SecretMaskingFilter`` scrubs credentials from every record before it is
emitted. CI logs are usually public, and commands we log (``tailscale up``,
ssh invocations) may echo values taken from the environment.

Usage:
    from runner_sync.core.logging_config import setup_logging

    setup_logging(verbose=args.verbose, quiet=args.quiet, environ=config.environ)
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Mapping

__all__ = [
    "PACKAGE_LOGGER",
    "SecretMaskingFilter",
    "log_banner",
    "setup_logging",
]

PACKAGE_LOGGER = "runner_sync"
PACKAGE_NAME = "runner-sync"

LOG_FORMAT = "[%(asctime)s] [%(package)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Key fragments marking an environment variable as sensitive
SENSITIVE_KEY_PATTERNS = (
    "PASSWORD", "SECRET", "KEY", "TOKEN", "API",
    "CLIENT_ID", "CLIENT_SECRET", "AUTH", "OAUTH",
    "PRIVATE", "CREDENTIAL", "ACCESS", "PASSPHRASE",
)

# Common values that are never worth masking even under a sensitive key
SKIP_VALUES = frozenset({
    "true", "false", "TRUE", "FALSE",
    "null", "undefined", "NULL",
    "production", "development", "test", "staging",
})

MIN_SECRET_LENGTH = 6

TOKEN_PATTERNS = (
    (re.compile(r"tskey-[a-zA-Z0-9-]{30,}"), "***TAILSCALE_KEY***"),
    (re.compile(r"ghp_[a-zA-Z0-9]{36}"), "***GITHUB_TOKEN***"),
    # Long base64 runs carrying a "+" or "=" padding; plain hex SHAs and paths do not qualify
    (
        re.compile(
            r"(?<![A-Za-z0-9+/])(?=[A-Za-z0-9/]*\+)[A-Za-z0-9+/]{32,}={0,2}"
            r"|(?<![A-Za-z0-9+/])[A-Za-z0-9+/]{32,}={1,2}"
        ),
        "***BASE64_SECRET***",
    ),
)


def _collect_secrets(environ: Mapping[str, str]) -> list[str]:
    """Return sensitive env values, longest first so overlaps mask fully."""
    secrets: set[str] = set()
    for key, value in environ.items():
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if len(trimmed) < MIN_SECRET_LENGTH or trimmed in SKIP_VALUES or trimmed.isdigit():
            continue
        upper_key = key.upper()
        if any(pattern in upper_key for pattern in SENSITIVE_KEY_PATTERNS):
            secrets.add(" ".join(trimmed.split()))
    return sorted(secrets, key=len, reverse=True)


class SecretMaskingFilter(logging.Filter):
    """Replace secret values in log messages with asterisks.

    The environment snapshot is captured once at construction so the filter
    never reads process state on its own.
    """

    def __init__(self, environ: Mapping[str, str] | None = None):
        super().__init__()
        self._patterns = [
            (re.compile(r"\s+".join(re.escape(part) for part in secret.split(" "))), "*" * len(secret))
            for secret in _collect_secrets(environ or {})
        ]

    def mask(self, message: str) -> str:
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        for pattern, replacement in TOKEN_PATTERNS:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        masked = self.mask(record.getMessage())
        record.msg = masked
        record.args = None
        return True


class _PackageTagFilter(logging.Filter):
    def __init__(self, tag: str):
        super().__init__()
        self._tag = tag

    def filter(self, record: logging.LogRecord) -> bool:
        record.package = self._tag
        return True


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    version: str = "unknown",
    environ: Mapping[str, str] | None = None,
    stream=None,
) -> logging.Logger:
    """Configure the package logger with masking and a single console handler.

    Calling it again replaces the previous handler, so tests and repeated
    CLI invocations in one process do not duplicate output.

    Args:
        verbose: Emit DEBUG records.
        quiet: Only emit WARNING and above. Wins over ``verbose``.
        version: Package version shown in every line.
        environ: Environment snapshot used to find secrets to mask.
        stream: Output stream (default: stderr).

    Returns:
        The configured ``runner_sync`` logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(_PackageTagFilter(f"{PACKAGE_NAME}@{version}"))
    handler.addFilter(SecretMaskingFilter(environ))

    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def log_banner(logger: logging.Logger, version: str, command: str = "") -> None:
    """Log the startup banner."""
    rule = "━" * 47
    logger.info(rule)
    logger.info(f"{PACKAGE_NAME} - version {version}")
    if command:
        logger.info(f"Command: {command}")
    logger.info(rule)
