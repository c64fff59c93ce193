from __future__ import annotations

import hashlib
import json
from typing import Any

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel, Field

from agent_hub.api.errors import APIError
from agent_hub.api.pagination import cursor_param, encode_page
from agent_hub.config.load_config import load_app_config
from agent_hub.runtime import jobs as job_service
from agent_hub.storage.sqlite_store import SQLiteStore, row_to_dict


router = APIRouter()


class CreateJobRequest(BaseModel):
    test_id: str
    agent_id: str | None = Field(default=None)
    priority: int | None = Field(default=None)
    run_id: str | None = Field(default=None)


class ChangeJobStatusRequest(BaseModel):
    status: str


def request_hash(body: BaseModel) -> str:
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(req_json.encode("utf-8")).hexdigest()


def _job_payload(store: SQLiteStore, job_id: str) -> dict[str, Any]:
    job = row_to_dict(store.get_job(job_id=job_id))
    if job is None:
        raise APIError(status_code=404, code="not_found", message="Job not found.")
    return {"job": job}


@router.get("/jobs")
def list_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    agent_id: str | None = Query(default=None),
    run_id: str | None = Query(default=None),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        page = store.list_jobs_page(
            limit=int(limit),
            cursor=cursor_param(cursor),
            statuses=status or None,
            agent_id=agent_id,
            run_id=run_id,
        )
        return encode_page(page)
    finally:
        store.close()


@router.post("/jobs")
def create_job(
    body: CreateJobRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    cfg = load_app_config()
    digest = request_hash(body)
    store = SQLiteStore()
    try:
        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != digest:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            job = job_service.enqueue_job(
                store,
                cfg=cfg,
                test_id=body.test_id,
                agent_id=body.agent_id,
                priority=body.priority,
                run_id=body.run_id,
                commit=False,
            )
            response: dict[str, Any] = {
                "job": {
                    "job_id": job.job_id,
                    "test_id": job.test_id,
                    "run_id": job.run_id,
                    "agent_id": body.agent_id,
                    "status": job.status,
                    "priority": job.priority,
                    "created_at": job.created_at,
                }
            }
            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=digest,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )
            return response
    finally:
        store.close()


@router.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return _job_payload(store, job_id)
    finally:
        store.close()


@router.post("/jobs/{job_id}/status")
def change_job_status(job_id: str, body: ChangeJobStatusRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job_service.change_job_status(store, job_id=job_id, status=body.status)
        return _job_payload(store, job_id)
    finally:
        store.close()


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job_service.cancel_job(store, job_id=job_id)
        return _job_payload(store, job_id)
    finally:
        store.close()


@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job_service.retry_job(store, job_id=job_id)
        return _job_payload(store, job_id)
    finally:
        store.close()


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job_service.delete_job(store, job_id=job_id)
        return {"job_id": job_id, "deleted": True}
    finally:
        store.close()
