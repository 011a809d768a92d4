"""Operator version reporting."""
import os

from winnodectl import __version__

VERSION_ENV = "WNC_OPERATOR_VERSION"


def get() -> str:
    """Return the version string stamped on configured nodes."""
    return os.getenv(VERSION_ENV) or __version__
