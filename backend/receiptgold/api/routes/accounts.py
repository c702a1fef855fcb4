from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.api.dependencies import get_reconciler
from receiptgold.core.config import settings
from receiptgold.core.database import get_session_factory
from receiptgold.core.security import get_caller_id
from receiptgold.models.schemas import AccountDeletedResponse, ProvisionRequest, ProvisionResponse
from receiptgold.services.accounts import delete_account, provision_account
from receiptgold.services.reconciliation import SubscriptionReconciler
from receiptgold.utils.helpers import utcnow

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", response_model=ProvisionResponse)
async def provision(
    body: ProvisionRequest,
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Create billing state for the caller right after sign-up."""
    async with session_factory.begin() as session:
        result = await provision_account(
            session,
            reconciler,
            caller_id,
            now=utcnow(),
            trial_days=settings.TRIAL_DAYS,
            account_holder_id=body.account_holder_id,
        )
    return ProvisionResponse(user_id=result.user_id, is_team_member=result.is_team_member, created=result.created)


@router.delete("/me", response_model=AccountDeletedResponse)
async def delete_me(
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory.begin() as session:
        rows = await delete_account(session, caller_id)
    return AccountDeletedResponse(user_id=caller_id, rows_deleted=rows)
