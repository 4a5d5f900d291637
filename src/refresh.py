"""CLI command for a one-shot vault processing run"""

import asyncio
import logging
import sys
from datetime import datetime

from src.config import config
from src.models.refresh_config import RefreshResult
from src.services.manager import EmbeddingsManager
from src.services.refresh_orchestrator import RefreshOrchestrator
from src.services.vault import Vault
from src.services.vector_store import VectorStore


def setup_logging() -> None:
    """Configure logging for CLI (stdout for K8s)"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run_once() -> RefreshResult | None:
    """
    Initialize the index and process the vault once

    Returns:
        RefreshResult or None when the provider is not configured
    """
    manager = EmbeddingsManager(
        Vault(config.vault_path), VectorStore(config.db_path), auto_process=False
    )
    try:
        if not manager.is_provider_ready():
            return None
        await manager.initialize()
        return await RefreshOrchestrator(manager).refresh_once()
    finally:
        await manager.close()


def main() -> int:
    """
    Main entry point for refresh CLI command

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        logger.info("Starting vault processing")
        logger.info(f"Timestamp: {datetime.now().isoformat()}")
        logger.info(f"Vault: {config.vault_path} Database: {config.db_path}")

        result = asyncio.run(run_once())

        if result is None:
            logger.error("Embeddings provider is not configured (set the endpoint and model)")
            return 1
        if not result.success:
            logger.error(f"Vault processing failed: {result.error}")
            return 1

        logger.info(
            f"Vault processing {result.status.value if result.status else 'finished'} "
            f"in {result.duration_seconds:.2f}s ({result.processed} notes)"
        )
        return 0
    except FileNotFoundError as e:
        logger.error(f"Vault or database path not found: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
