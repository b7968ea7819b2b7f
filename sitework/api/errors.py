from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException

from sitework.services.errors import WorkflowError


def handle_workflow_error(exc: WorkflowError) -> NoReturn:
    raise HTTPException(
        status_code=exc.status_code,
        detail={"kind": exc.kind, "message": str(exc)},
    ) from exc
