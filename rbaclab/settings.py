import logging
from typing import Any
from typing import List

from dynaconf import Dynaconf

logger = logging.getLogger(__name__)


settings = Dynaconf(
    includes=["settings.toml"],
    load_dotenv=True,
    merge_enabled=True,
    envvar_prefix="RBACLAB",
)

DEFAULT_NEO4J_URI = "bolt://localhost:7687"
DEFAULT_PRIVILEGED_GROUPS = ["system:masters"]


def check_module_settings(module_name: str, required_settings: List[str]) -> bool:
    """
    Check if the required settings for a module are set in the configuration.

    Args:
        module_name (str): The name of the settings section, e.g. "neo4j".
        required_settings (List[str]): A list of required settings for the section.

    Returns:
        bool: True if all required settings are present, False otherwise.
    """
    module_settings = settings.get(module_name.upper(), None)
    if module_settings is None:
        logger.info(
            "%s is not configured - skipping. See docs to configure.",
            module_name,
        )
        return False

    missing_settings = [
        setting for setting in required_settings if not module_settings.get(setting)
    ]
    if len(missing_settings) > 0:
        logger.warning(
            "%s is not configured - skipping. Missing settings: %s",
            module_name,
            ", ".join(missing_settings),
        )
        return False
    return True


def get_setting(module_name: str, setting: str, default: Any = None) -> Any:
    """Read `[module_name].setting` from settings.toml or RBACLAB_<MODULE>__<SETTING>."""
    module_settings = settings.get(module_name.upper(), None)
    if module_settings is None:
        return default
    value = module_settings.get(setting)
    return default if value is None else value


def get_privileged_groups() -> List[str]:
    groups = get_setting("authorizer", "privileged_groups", DEFAULT_PRIVILEGED_GROUPS)
    if isinstance(groups, str):
        groups = [g.strip() for g in groups.split(",") if g.strip()]
    return list(groups)
