from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from uatcms.api.errors import APIError
from uatcms.storage.sqlite_store import SQLiteStore


router = APIRouter()


class SetEnvironmentRequest(BaseModel):
    base_url: str = Field(min_length=1)
    release_id: int | None = Field(default=None, ge=1, description="Omit for the global URL.")


class CreateTestSetRequest(BaseModel):
    release_id: int = Field(ge=1)
    name: str = Field(min_length=1)
    release_number: str | None = Field(default=None)


@router.put("/environments/{environment}")
def set_environment(environment: str, body: SetEnvironmentRequest) -> dict[str, Any]:
    base_url = body.base_url.strip()
    if not base_url.startswith(("http://", "https://")):
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="base_url must be an http(s) URL.",
            details={"base_url": body.base_url},
        )
    store = SQLiteStore()
    try:
        store.set_environment_url(environment=environment, base_url=base_url, release_id=body.release_id)
        return {"environment": environment.strip().lower(), "release_id": body.release_id, "base_url": base_url}
    finally:
        store.close()


@router.get("/environments")
def list_environments() -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": store.list_environments()}
    finally:
        store.close()


@router.post("/test-sets")
def create_test_set(body: CreateTestSetRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if body.release_number is not None:
            store.upsert_release(release_id=body.release_id, release_number=body.release_number)
        ts = store.create_test_set(release_id=body.release_id, name=body.name.strip())
        return {
            "test_set": {
                "test_set_id": ts.test_set_id,
                "release_id": ts.release_id,
                "name": ts.name,
                "release_number": ts.release_number,
            }
        }
    finally:
        store.close()


@router.get("/releases/{release_id}/test-sets")
def list_release_test_sets(release_id: int) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {
            "release_id": release_id,
            "items": [
                {"test_set_id": ts.test_set_id, "name": ts.name, "release_number": ts.release_number}
                for ts in store.list_test_sets_for_release(release_id=release_id)
            ],
        }
    finally:
        store.close()
