"""Escalation policy router."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import OncallError
from src.core.http_errors import http_error
from src.database import get_db
from src.schemas.escalation_policy import (
    EscalationPolicyCreate,
    EscalationPolicyResponse,
    EscalationPolicyUpdate,
)
from src.services import escalation_policy_service

router = APIRouter(prefix="/api/escalation-policies", tags=["escalation-policies"])


@router.get("", response_model=list[EscalationPolicyResponse])
async def list_policies(
    db: AsyncSession = Depends(get_db),
) -> list[EscalationPolicyResponse]:
    policies = await escalation_policy_service.list_policies(db)
    return [EscalationPolicyResponse.model_validate(p) for p in policies]


@router.post(
    "",
    response_model=EscalationPolicyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_policy(
    data: EscalationPolicyCreate,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyResponse:
    """Create a policy with its steps.

    Every step needs at least one channel or an on-call rotation.
    """
    try:
        policy = await escalation_policy_service.create_policy(db, data)
    except OncallError as exc:
        raise http_error(exc) from exc
    return EscalationPolicyResponse.model_validate(policy)


@router.get("/{policy_id}", response_model=EscalationPolicyResponse)
async def get_policy(
    policy_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyResponse:
    try:
        policy = await escalation_policy_service.get_policy(db, policy_id)
    except OncallError as exc:
        raise http_error(exc) from exc
    return EscalationPolicyResponse.model_validate(policy)


@router.patch("/{policy_id}", response_model=EscalationPolicyResponse)
async def update_policy(
    policy_id: uuid.UUID,
    data: EscalationPolicyUpdate,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyResponse:
    """Partially update a policy; ``steps`` replaces the whole step list."""
    try:
        policy = await escalation_policy_service.update_policy(db, policy_id, data)
    except OncallError as exc:
        raise http_error(exc) from exc
    return EscalationPolicyResponse.model_validate(policy)


@router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        await escalation_policy_service.delete_policy(db, policy_id)
    except OncallError as exc:
        raise http_error(exc) from exc
