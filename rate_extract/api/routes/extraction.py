"""Extraction routes: start, poll, list, cancel, download."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from fastapi.responses import FileResponse

from rate_extract.api.deps import Caller, get_caller, get_orchestrator
from rate_extract.core.constants import COMPLETE_EXTRACTION_FILENAME
from rate_extract.schemas import (
    ArtifactInfoResponse,
    ArtifactListResponse,
    CancelExtractionResponse,
    ExtractionConflictResponse,
    ExtractionJobListResponse,
    ExtractionJobResponse,
    ExtractionSchemaResponse,
    StartExtractionRequest,
    StartExtractionResponse,
)
from rate_extract.services.orchestrator import (
    ArtifactNotFoundError,
    ContractNotFoundError,
    ExtractionConflictError,
    ExtractionOrchestrator,
    JobNotCancellableError,
    JobNotCompletedError,
    JobNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["extraction"])


@router.post(
    "/contracts/{contract_id}/extract",
    response_model=StartExtractionResponse,
    response_model_by_alias=True,
    responses={
        400: {"model": ExtractionConflictResponse},
        404: {"description": "Contract not found"},
    },
)
def start_extraction(
    contract_id: str,
    background_tasks: BackgroundTasks,
    request: StartExtractionRequest | None = Body(default=None),
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> StartExtractionResponse:
    """Start extracting every schema section of a contract.

    Returns at once with the new job's ID; poll
    ``GET /extraction-jobs/{job_id}`` for progress.  Fails with
    400 while another job for the same contract is still pending
    or processing.
    """
    request = request or StartExtractionRequest()
    try:
        job = orchestrator.start(
            contract_id,
            caller.tenant_id,
            caller.user_id,
            callback_url=str(request.callback_url) if request.callback_url else None,
            callback_headers=request.callback_headers,
        )
    except ContractNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Contract not found") from exc
    except ExtractionConflictError as exc:
        body = ExtractionConflictResponse(job_id=exc.job_id, status=exc.status)
        raise HTTPException(
            status_code=400,
            detail=body.model_dump(mode="json", by_alias=True),
        ) from exc

    if orchestrator.dispatch is None:
        logger.info("Running extraction job %s in the API process", job.id)
        background_tasks.add_task(orchestrator.process, job.id)

    return StartExtractionResponse(job_id=job.id, status=job.status)


@router.get(
    "/extraction-jobs/{job_id}",
    response_model=ExtractionJobResponse,
    response_model_by_alias=True,
)
def get_extraction_job(
    job_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> ExtractionJobResponse:
    """Poll a job's status, current section and progress percentage."""
    try:
        job = orchestrator.get_job(job_id, caller.tenant_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Extraction job not found") from exc
    return ExtractionJobResponse.from_job(job, orchestrator.get_contract(job.contract_id))


@router.get(
    "/contracts/{contract_id}/extraction-jobs",
    response_model=ExtractionJobListResponse,
    response_model_by_alias=True,
)
def list_extraction_jobs(
    contract_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> ExtractionJobListResponse:
    """All extraction jobs for a contract, newest first."""
    try:
        jobs = orchestrator.list_jobs(contract_id, caller.tenant_id)
    except ContractNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Contract not found") from exc
    contract = orchestrator.get_contract(contract_id)
    return ExtractionJobListResponse(
        contract_id=contract_id,
        jobs=[ExtractionJobResponse.from_job(job, contract) for job in jobs],
    )


@router.post(
    "/extraction-jobs/{job_id}/cancel",
    response_model=CancelExtractionResponse,
    response_model_by_alias=True,
)
def cancel_extraction_job(
    job_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> CancelExtractionResponse:
    """Cancel a pending or processing job.

    The worker stops at its next section boundary.  Returns 400 for
    a job that is already completed, failed or cancelled.
    """
    try:
        orchestrator.cancel(job_id, caller.tenant_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Extraction job not found") from exc
    except JobNotCancellableError as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "error": f"Cannot cancel a {exc.status} job",
                "currentStatus": str(exc.status),
            },
        ) from exc
    return CancelExtractionResponse(job_id=job_id)


def _download(
    orchestrator: ExtractionOrchestrator,
    caller: Caller,
    job_id: str,
    file_name: str,
) -> FileResponse:
    try:
        path = orchestrator.resolve_artifact(job_id, caller.tenant_id, file_name)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Extraction job not found") from exc
    except JobNotCompletedError as exc:
        raise HTTPException(
            status_code=404,
            detail={"error": "Extraction not completed", "status": str(exc.status)},
        ) from exc
    except ArtifactNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    return FileResponse(path, media_type="application/json", filename=path.name)


@router.get("/extraction-jobs/{job_id}/download", response_class=FileResponse)
def download_consolidated(
    job_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """Download ``complete_extraction.json`` of a completed job."""
    return _download(orchestrator, caller, job_id, COMPLETE_EXTRACTION_FILENAME)


@router.get("/extraction-jobs/{job_id}/download/{file_name}", response_class=FileResponse)
def download_artifact(
    job_id: str,
    file_name: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """Download one named output file of a completed job."""
    return _download(orchestrator, caller, job_id, file_name)


@router.get(
    "/extraction-jobs/{job_id}/files",
    response_model=ArtifactListResponse,
    response_model_by_alias=True,
)
def list_extraction_files(
    job_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> ArtifactListResponse:
    """List the files a completed job produced."""
    try:
        job, files = orchestrator.list_artifacts(job_id, caller.tenant_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Extraction job not found") from exc
    except JobNotCompletedError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "Extraction not completed", "status": str(exc.status)},
        ) from exc
    return ArtifactListResponse(
        job_id=job.id,
        output_directory=job.output_directory,
        files=[ArtifactInfoResponse.from_info(info) for info in files],
    )


@router.get(
    "/extraction-schema",
    response_model=ExtractionSchemaResponse,
    response_model_by_alias=True,
)
def get_extraction_schema(
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
) -> ExtractionSchemaResponse:
    """The sections, fields and rules every job extracts."""
    return ExtractionSchemaResponse(
        version=orchestrator.schema.version,
        sections=[
            section.model_dump(mode="json", exclude_none=True)
            for section in orchestrator.schema.get_sections()
        ],
    )
