import logging

from dotenv import load_dotenv

from .config import get_settings


def setup() -> None:
    """Load .env into the environment and configure logging. Call once at process start."""
    load_dotenv(override=False)
    get_settings.cache_clear()
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # litellm is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
