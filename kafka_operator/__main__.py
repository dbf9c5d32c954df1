import asyncio
import logging
import os
import threading

from .config import OperatorConfig
from .operator import KafkaAssemblyController

# Configure logging
logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    operator_config = OperatorConfig.from_env()
    logging.getLogger().setLevel(operator_config.log_level.upper())

    controller = KafkaAssemblyController.from_cluster(operator_config)

    # Start API server in a separate thread
    api_thread = threading.Thread(target=controller.run_api_server, daemon=True)
    api_thread.start()

    try:
        asyncio.run(controller.run())
    except KeyboardInterrupt:
        logger.info("Operator stopped")


if __name__ == '__main__':
    main()
