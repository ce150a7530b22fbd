from fastapi import APIRouter, HTTPException, status

from app.api.dependencies import integrations_dep, organization_dep, store_dep
from app.core import schemas
from app.core.config import settings
from app.core.errors import DatasourceNotFoundError

router = APIRouter(prefix="/queries", tags=["Queries"])


@router.get("", response_model=schemas.QueriesResponse)
async def get_queries(ids: str, organization: organization_dep, store: store_dep):
    """
    Look up query records by comma separated ids.
    Results keep the requested order; unknown ids come back as null.
    """
    query_ids = [query_id.strip() for query_id in ids.split(",") if query_id.strip()]
    queries = await store.get_queries_by_ids(query_ids, organization)
    return {"queries": queries}


@router.post("/test", response_model=schemas.TestQueryResponse)
async def test_limited_query(
    payload: schemas.TestQueryRequest,
    organization: organization_dep,
    integrations: integrations_dep,
):
    """Run a query with a small LIMIT so users can check it before an analysis."""
    try:
        integration = integrations.get(payload.datasource_id)
    except DatasourceNotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, error.message)

    return await integration.test_query(
        payload.query, payload.template_variables, limit=settings.TEST_QUERY_LIMIT
    )
