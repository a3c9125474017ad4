# backend/queryhub/api/routes_queries.py

from fastapi import APIRouter, Depends

from ..schemas.queries import CancelRequest, ExecutionEnvelope, QueryParameters
from ..services.execution_service import ExecutionDispatcher, get_dispatcher


router = APIRouter(prefix="/queries", tags=["queries"])


# ------------------------------------------------------
# RUN / RESUME A QUERY
# ------------------------------------------------------
@router.post("/run", response_model=ExecutionEnvelope)
def run_query(params: QueryParameters, dispatcher: ExecutionDispatcher = Depends(get_dispatcher)):
    """
    Returns one of:
        {"status": "done", "result": {...}}
        {"status": "pending", "continuation": "..."}   -> post again with it
        {"status": "failed", "error": "..."}
    """
    return dispatcher.execute(params)


# ------------------------------------------------------
# ABANDON A RUNNING QUERY
# ------------------------------------------------------
@router.post("/cancel", response_model=dict)
def cancel_query(body: CancelRequest, dispatcher: ExecutionDispatcher = Depends(get_dispatcher)):
    return {"cancelled": dispatcher.cancel(body.continuation)}
