"""
Secrets management utilities for KEYWARD.

Secrets come from a file named by ``{NAME}_FILE``, the ``{NAME}`` environment
variable, or the Docker secrets mount, in that order.

Usage:
    from keyward.utils.secrets import get_secret

    db_password = get_secret("POSTGRES_PASSWORD")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)

DOCKER_SECRETS_DIR = "/run/secrets"


def _read_secret_file(path: str) -> Optional[str]:
    if not os.path.isfile(path):
        return None
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Failed to read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value.

    Args:
        name: Secret name (e.g., "POSTGRES_PASSWORD")
        default: Returned if no source provides the secret

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path:
        secret = _read_secret_file(file_path)
        if secret is not None:
            logger.debug(f"Loaded secret {name} from {name}_FILE")
            return secret

    env_value = os.environ.get(name)
    if env_value:
        return env_value

    secret = _read_secret_file(os.path.join(DOCKER_SECRETS_DIR, name.lower()))
    if secret is not None:
        logger.debug(f"Loaded secret {name} from Docker secrets")
        return secret

    if default is None:
        logger.warning(f"Secret {name} not found, no default provided")
    return default


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """
    Mask a secret (session token, recovery code) for safe logging.

    Returns:
        Masked string like "abc...xyz"
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
