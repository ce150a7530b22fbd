import logging
from typing import Any

from fastapi import APIRouter, HTTPException, status

from app.api.dependencies import integrations_dep, organization_dep, runner_dep
from app.core import schemas
from app.core.analysis.kinds import AnalysisKind, DIMENSION_SLICES, METRIC_AGGREGATE
from app.core.analysis.runner import QueryRunner
from app.core.errors import (
    AnalysisConflictError,
    AnalysisNotFoundError,
    BuildError,
    DatasourceNotFoundError,
)
from app.core.integrations.sql import IntegrationFactory

router = APIRouter(prefix="/analyses", tags=["Analyses"])


async def start_kind(
    kind: AnalysisKind,
    params: Any,
    organization: str,
    runner: QueryRunner,
    integrations: IntegrationFactory,
    wait: bool,
) -> schemas.AnalysisRecord:
    """Start one analysis of the given kind and map orchestrator errors to HTTP."""
    try:
        integration = integrations.get(params.datasource_id)
        return await runner.start_analysis(
            organization=organization,
            target_key=kind.target_key(params),
            params=params,
            query_builders=kind.query_builders(params),
            result_transform=kind.result_transform(params),
            integration=integration,
            kind=kind.name,
            wait=wait,
        )
    except DatasourceNotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, error.message)
    except BuildError as error:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, error.message)
    except AnalysisConflictError as error:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": error.message, "existing_id": error.existing_id},
        )


@router.post("/dimension-slices", response_model=schemas.AnalysisRecord)
async def post_dimension_slices(
    params: schemas.DimensionSlicesParams,
    organization: organization_dep,
    runner: runner_dep,
    integrations: integrations_dep,
    wait: bool = False,
):
    """
    Compute the most common slices of every dimension of an exposure query.
    Runs in the background unless ``wait=true``.
    """
    return await start_kind(
        DIMENSION_SLICES, params, organization, runner, integrations, wait
    )


@router.post("/metric-aggregates", response_model=schemas.AnalysisRecord)
async def post_metric_aggregates(
    params: schemas.MetricAggregateParams,
    organization: organization_dep,
    runner: runner_dep,
    integrations: integrations_dep,
    wait: bool = False,
):
    """Count, sum and average every metric over the lookback window."""
    return await start_kind(
        METRIC_AGGREGATE, params, organization, runner, integrations, wait
    )


@router.get("/latest", response_model=schemas.AnalysisRecord)
async def get_latest_analysis(
    kind: str,
    target_key: str,
    organization: organization_dep,
    runner: runner_dep,
):
    """Most recent analysis of a kind for a target (e.g. "datasource:exposureQuery")."""
    analysis = await runner.get_latest_analysis(organization, kind, target_key)
    if analysis is None:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND, f"No {kind} analysis for {target_key}"
        )
    return analysis


@router.get("/{analysis_id}", response_model=schemas.AnalysisRecord)
async def get_analysis(analysis_id: str, organization: organization_dep, runner: runner_dep):
    try:
        return await runner.get_analysis(analysis_id, organization)
    except AnalysisNotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, error.message)


@router.post("/{analysis_id}/cancel", response_model=schemas.AnalysisRecord)
async def cancel_analysis(
    analysis_id: str,
    organization: organization_dep,
    runner: runner_dep,
    integrations: integrations_dep,
):
    """
    Cancel running queries; canceling a finished analysis changes nothing.
    If the datasource is gone, only the local records are canceled.
    """
    try:
        analysis = await runner.get_analysis(analysis_id, organization)
        if analysis.is_terminal:
            return analysis

        datasource_id = (analysis.params or {}).get("datasource_id")
        try:
            integration = integrations.get(datasource_id)
        except DatasourceNotFoundError as error:
            # Removed datasource: the records can still be closed
            logging.warning(f"{error.message}, canceling analysis {analysis_id} locally")
            integration = None
        return await runner.cancel_analysis(analysis_id, integration, organization)
    except AnalysisNotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, error.message)
    except Exception as error:
        logging.error(f"Failed to cancel analysis {analysis_id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel analysis",
        )
