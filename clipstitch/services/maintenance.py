"""
Background maintenance task.

Runs every ``maintenance_interval_seconds`` and:
- expires chunk sessions that stopped receiving chunks
- deletes finalized uploads that no job claimed
- deletes compiled outputs older than ``max_output_age_seconds``

This keeps the data directory from filling up with abandoned transfers and
results nobody downloaded.
"""

import asyncio
import logging
from typing import Optional

from clipstitch.config import Settings, get_settings
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.upload_assembler import UploadAssembler

logger = logging.getLogger(__name__)


def sweep(
    assembler: UploadAssembler,
    storage: OutputStorage,
    settings: Optional[Settings] = None,
) -> tuple[int, int, int]:
    """
    Run one maintenance pass.

    Returns (expired sessions, expired uploads, purged outputs).
    """
    settings = settings or get_settings()
    expired = assembler.expire_sessions(settings.chunk_session_timeout_seconds)
    unclaimed = assembler.expire_uploads(settings.unclaimed_upload_timeout_seconds)
    purged = storage.purge_older_than(settings.max_output_age_seconds)
    return expired, unclaimed, purged


async def run_maintenance(
    assembler: UploadAssembler,
    storage: OutputStorage,
    settings: Optional[Settings] = None,
) -> None:
    """Infinite loop: sleep, then sweep. Stops when the task is cancelled."""
    settings = settings or get_settings()
    while True:
        try:
            await asyncio.sleep(settings.maintenance_interval_seconds)
            expired, unclaimed, purged = sweep(assembler, storage, settings)
            if expired or unclaimed or purged:
                logger.info(
                    f"Maintenance: expired {expired} session(s), {unclaimed} unclaimed upload(s), "
                    f"purged {purged} output(s)"
                )
        except asyncio.CancelledError:
            logger.info("Maintenance task stopped")
            break
        except Exception as e:
            # Log but never crash the background task
            logger.exception(f"Maintenance sweep failed: {e}")
