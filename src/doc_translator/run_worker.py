import logging

from doc_translator import tasks
from doc_translator.config import configure_logging, settings
from doc_translator.services import build_services

logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging()
    services = build_services(settings)
    # forked workers inherit the wired container
    tasks.use_services(services)

    logger.info("Starting background workers...")
    services.worker_pool().start()


if __name__ == "__main__":
    main()
