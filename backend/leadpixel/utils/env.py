import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Load variables from a local .env file without overriding the environment.

    WHAT:
        Reads backend/.env (or the nearest .env) into os.environ.
    WHY:
        Developers run the API and the arq worker from a shell; production
        injects real variables which must win over anything in the file.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
