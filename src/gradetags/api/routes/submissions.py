"""
Grading-sync API routes.

The grading platform calls this hook whenever a submission's grading
result becomes ``graded``.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from gradetags.api.deps import get_pipeline_config
from gradetags.api.schemas import GradedEventRequest, GradedEventResponse
from gradetags.db.connection import get_db
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.service import TaxonomyService

router = APIRouter()


@router.post(
    "/graded",
    response_model=GradedEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def submissions_graded(
    body: GradedEventRequest,
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> GradedEventResponse:
    """
    Mark the assignments' tag states dirty and (re)open their debounce windows.

    Always accepted: scheduling failures are logged, never surfaced.
    """
    touched = TaxonomyService(session, config).record_graded(
        body.owner_id, body.assignment_ids
    )
    return GradedEventResponse(touched=touched)
