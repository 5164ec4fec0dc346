"""Environment helpers shared by the worker, scheduler and migrations."""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str, hint: Optional[str] = None) -> str:
    """Return a mandatory environment variable or raise RuntimeError.

    WHY: Worker and scheduler processes should fail at startup, not on the
    first job, when critical configuration is missing.
    """
    value = os.getenv(name)
    if not value:
        message = f"{name} is not set."
        if hint:
            message = f"{message} {hint}"
        raise RuntimeError(message)
    return value


def load_env_file(path: Optional[str] = None) -> bool:
    """Load a local .env file into os.environ, keeping variables already set.

    Returns:
        True if a file was found and loaded
    """
    loaded = load_dotenv(dotenv_path=path, override=False)
    if loaded:
        logger.info("[ENV] Loaded %s (existing variables were NOT overwritten)", path or ".env")
    else:
        logger.debug("[ENV] No .env file found")
    return loaded
