"""Manual archive-and-purge trigger."""

import logging

from fastapi import APIRouter

from perfwatch.api.deps import RuntimeDep
from perfwatch.schemas.health import ArchiveRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/archive", tags=["archive"])


@router.post("/run", response_model=list[ArchiveRunResponse])
async def run_archive(runtime: RuntimeDep):
    results = await runtime.archive_all()
    logger.info("Manual archive run: %d row(s) archived", sum(r.rows_archived for r in results))
    return [
        ArchiveRunResponse(
            table=r.table,
            cutoff=r.cutoff,
            rows_archived=r.rows_archived,
            files=[str(path) for path in r.files],
            skipped=r.skipped,
        )
        for r in results
    ]
