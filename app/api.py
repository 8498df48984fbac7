"""Read-only HTTP routes exposing the state tree."""

from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status

from app.schemas import StateValue, StoredObject
from datastore.state_store import StateStore, build_default_store

router = APIRouter()


def get_store() -> StateStore:
    return build_default_store()


@router.get(
    "/states",
    response_model=Dict[str, StateValue],
    summary="List the current value of every state.",
)
async def list_states(store: StateStore = Depends(get_store)) -> Dict[str, StateValue]:
    return store.scan_states()


@router.get(
    "/states/{state_id}",
    response_model=StateValue,
    summary="Fetch the current value of one state.",
)
async def get_state(state_id: str, store: StateStore = Depends(get_store)) -> StateValue:
    state = store.get_state(state_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"State {state_id!r} not found.",
        )
    return state


@router.get(
    "/objects/{object_id}",
    response_model=StoredObject,
    summary="Fetch the definition of one object.",
)
async def get_object(object_id: str, store: StateStore = Depends(get_store)) -> StoredObject:
    item = store.get_object(object_id)
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Object {object_id!r} not found.",
        )
    return item


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
