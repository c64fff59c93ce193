from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from agent_hub.api.dependencies import get_functions
from agent_hub.api.errors import APIError
from agent_hub.functions.registry import FunctionsRuntime
from agent_hub.runtime.executions import cancel_execution
from agent_hub.storage.sqlite_store import SQLiteStore, row_to_dict


router = APIRouter()


@router.get("/executions/{execution_id}")
def get_execution(execution_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.get_execution(execution_id=execution_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Execution not found.")
        return {"execution": row_to_dict(row)}
    finally:
        store.close()


@router.post("/executions/{execution_id}/cancel")
def cancel(execution_id: str, functions: FunctionsRuntime = Depends(get_functions)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        cancel_execution(store, execution_id=execution_id, signal=functions.cancel_signal)
        return {"execution": row_to_dict(store.get_execution(execution_id=execution_id))}
    finally:
        store.close()
