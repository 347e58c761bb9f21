import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version

logger = logging.getLogger(__name__)


def get_version() -> str:
    """
    Get the current version of the rbaclab package.

    Returns the version string from the installed package metadata,
    or 'dev' if the package is not installed (e.g. development environments).
    """
    try:
        return version("rbaclab")
    except PackageNotFoundError:
        logger.debug("rbaclab package metadata not found, returning 'dev'.")
        return "dev"


def get_version_string() -> str:
    """
    Get a formatted version string suitable for CLI output, e.g. "rbaclab, version 0.1.0".
    """
    return f"rbaclab, version {get_version()}"
