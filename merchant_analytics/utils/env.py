def load_env_file() -> None:
    """Load variables from a local .env file without overwriting existing ones.

    Called by the entrypoints before settings are first read, so that
    per-office keys (PAYROC_<office>_API_TOKEN_B64), which are looked up
    with os.getenv rather than declared on Settings, see the .env values too.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
