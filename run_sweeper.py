"""
Recurring Schedule Sweeper Runner
Run this as a separate process when no Redis/arq worker is deployed: python run_sweeper.py
"""

import asyncio
import logging
import sys

from recurring_scheduler.database import init_db
from recurring_scheduler.domain.scheduling.sweeper import run_recurring_sweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info("🚀 Starting Recurring Schedule Sweeper...")
    try:
        init_db()
        asyncio.run(run_recurring_sweeper())
    except KeyboardInterrupt:
        logger.info("👋 Recurring sweeper stopped by user")
    except Exception as e:
        logger.error(f"❌ Recurring sweeper crashed: {e}")
        sys.exit(1)
