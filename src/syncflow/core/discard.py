"""Soft deletion of syncs and everything that hangs off them."""

from dataclasses import dataclass, field
from typing import List

from ..database import (
    DatabaseService,
    DiscardScope,
    get_sync_repository,
    get_sync_run_repository,
    get_sync_record_repository,
    utcnow
)
from ..exceptions import NotFoundError
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("core.discard")


@dataclass
class DiscardResult:
    """What a discard call touched."""

    sync_id: int
    discarded: bool
    sync_run_ids: List[int] = field(default_factory=list)
    detached_records: int = 0


class DiscardPropagator:
    """Cascades a sync discard to its runs and detaches their records.

    Records themselves are never deleted; they only lose their run
    reference so history outlives the runs that produced it.
    """

    def __init__(self, database_service: DatabaseService):
        self.db_service = database_service

    @log_execution_time
    def discard_sync(self, sync_id: int) -> DiscardResult:
        """Discard a sync in a single transaction.

        Discarding an already discarded sync is a no-op.

        Raises:
            NotFoundError: If no sync with this id exists at all
        """
        with self.db_service.transaction() as session:
            sync_repo = get_sync_repository(session)
            sync = sync_repo.get_by_id(sync_id, DiscardScope.WITH_DISCARDED)
            if sync is None:
                raise NotFoundError("Sync", sync_id)

            if sync.discarded_at is not None:
                logger.info("Sync already discarded", sync_id=sync_id)
                return DiscardResult(sync_id=sync_id, discarded=False)

            now = utcnow()
            sync_repo.discard(sync, now)
            run_ids = get_sync_run_repository(session).discard_for_sync(sync_id, now)
            detached = get_sync_record_repository(session).detach_runs(run_ids)

        logger.info(
            "Sync discarded",
            sync_id=sync_id,
            discarded_runs=len(run_ids),
            detached_records=detached
        )

        return DiscardResult(
            sync_id=sync_id,
            discarded=True,
            sync_run_ids=run_ids,
            detached_records=detached
        )

