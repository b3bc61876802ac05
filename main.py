import logging
import sys

from orchestrator.main import main as run_process_group

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    try:
        sys.exit(run_process_group())
    except KeyboardInterrupt:
        logger.info("Stopping process group...")
