def load_env_file() -> None:
    """Load environment variables from a local .env file if present.

    WHAT:
        Loads variables from .env into os.environ without overwriting
        variables that are already set.
    WHY:
        Local development can keep DATABASE_URL, JWT_SECRET and the Stripe
        keys in backend/.env while deployments inject real env vars.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    # Returns True when a .env file was found, even if it set nothing.
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
