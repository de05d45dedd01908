"""Startup configuration.

Reads the process environment once into a frozen ``RuntimeSettings``.
``validate_config()`` is called from the server entry point so that a
missing store URL fails at startup rather than on the first call.
"""

import os
import sys
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "FRONTDESK_STORE_URL",
    "FRONTDESK_AUDIT_URL",
]

OPTIONAL_VARS = [
    "FRONTDESK_STORE_API_KEY",
    "FRONTDESK_AUDIT_SECRET",
    "OPENAI_API_KEY",
    "FRONTDESK_EMBEDDINGS_URL",
    "FRONTDESK_CASCADE_KILL_SWITCH",
    "LOG_LEVEL",
]

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RuntimeSettings:
    store_url: str = ""
    store_api_key: str = ""
    audit_url: str = ""
    audit_secret: str = ""
    openai_api_key: str = ""
    embeddings_url: str = "https://api.openai.com/v1/embeddings"
    completions_url: str = "https://api.openai.com/v1/chat/completions"
    cascade_kill_switch: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "RuntimeSettings":
        env = os.environ if environ is None else environ
        return cls(
            store_url=env.get("FRONTDESK_STORE_URL", ""),
            store_api_key=env.get("FRONTDESK_STORE_API_KEY", ""),
            audit_url=env.get("FRONTDESK_AUDIT_URL", ""),
            audit_secret=env.get("FRONTDESK_AUDIT_SECRET", ""),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            embeddings_url=env.get("FRONTDESK_EMBEDDINGS_URL") or cls.embeddings_url,
            cascade_kill_switch=env.get("FRONTDESK_CASCADE_KILL_SWITCH", "").strip().lower() in _TRUTHY,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env before starting the server.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
