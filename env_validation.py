"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_LLM_API_URL = "https://api.openai.com/v1/chat/completions"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required; the completion API may run without a key
    # when pointed at a local OpenAI-compatible server.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "LLM_API_URL": os.getenv("LLM_API_URL") or DEFAULT_LLM_API_URL,
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_API_KEY": "Bearer key for the chat-completion API",
        "MODEL_ID": "Chat-completion model name",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"LLM_API_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    numeric_vars = {
        "DB_MAX_CONNECTIONS": int,
        "LLM_MAX_TOKENS": int,
        "LLM_TEMPERATURE": float,
        "LLM_TIMEOUT": float,
    }
    for var, cast in numeric_vars.items():
        value = os.getenv(var)
        if not value:
            continue
        try:
            number = cast(value)
        except ValueError:
            raise EnvironmentError(f"Invalid numeric value for {var}: {value}") from None
        if number <= 0 and var != "LLM_TEMPERATURE":
            raise EnvironmentError(f"{var} must be positive: {value}")

    prompt_dir = os.getenv("PROMPT_DIR")
    if prompt_dir and not os.path.isdir(prompt_dir):
        raise EnvironmentError(f"PROMPT_DIR does not exist: {prompt_dir}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")
