"""Account endpoints: overview, deletion eligibility, and account deletion."""

from __future__ import annotations

import logging

from billing_engine.billing.eligibility import DeletionDecision
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from accounts_api.dependencies import (
    ClientIPDep,
    CurrentUserDep,
    IdentityAdminDep,
    IdentityDep,
    LoginLimiterDep,
    SessionDep,
)
from accounts_api.middleware.prometheus import ACCOUNT_DELETIONS_TOTAL
from accounts_api.services.account_service import (
    AccountDeletionService,
    AccountError,
    AccountOverview,
    ConfirmationRequired,
    DeletionBlocked,
    DeletionFailed,
    InvalidCredential,
    TooManyAttempts,
    build_account_overview,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account", tags=["account"])

_OUTCOME_LABELS: dict[type[AccountError], str] = {
    ConfirmationRequired: "confirmation_required",
    TooManyAttempts: "rate_limited",
    InvalidCredential: "invalid_credential",
    DeletionBlocked: "blocked",
    DeletionFailed: "failed",
}


class DeleteAccountRequest(BaseModel):
    """Request body for ``POST /account/delete``."""

    password: str = Field(default="", description="Current password, re-verified before deletion.")
    confirmed: bool = Field(default=False, description="Explicit confirmation that the account should be deleted.")


class DeleteAccountResponse(BaseModel):
    deleted: bool = True
    redirect_to: str


@router.get("", response_model=AccountOverview)
async def get_account(
    session: SessionDep,
    current_user: CurrentUserDep,
    message: str | None = Query(default=None, description="Status message from a checkout redirect."),
) -> AccountOverview:
    """Return the account page data for the current user."""
    return await build_account_overview(session, current_user.user, message=message)


@router.get("/deletion-eligibility", response_model=DeletionDecision)
async def get_deletion_eligibility(
    session: SessionDep,
    current_user: CurrentUserDep,
    identity: IdentityDep,
    admin: IdentityAdminDep,
) -> DeletionDecision:
    """Evaluate whether the current user may delete their account right now."""
    svc = AccountDeletionService(session, identity, admin)
    return await svc.evaluate(current_user.id)


@router.post("/delete", response_model=DeleteAccountResponse)
async def delete_account(
    body: DeleteAccountRequest,
    session: SessionDep,
    current_user: CurrentUserDep,
    identity: IdentityDep,
    admin: IdentityAdminDep,
    limiter: LoginLimiterDep,
    client_ip: ClientIPDep,
) -> DeleteAccountResponse:
    """Permanently delete the current user's account.

    Requires ``confirmed=true`` and the current password.  The billing
    state is re-read inside the request; an active, pending or otherwise
    unsettled subscription blocks deletion with HTTP 409.
    """
    svc = AccountDeletionService(session, identity, admin, limiter=limiter)
    try:
        redirect_to = await svc.delete_account(
            current_user.user,
            access_token=current_user.access_token,
            password=body.password,
            confirmed=body.confirmed,
            client_ip=client_ip,
        )
    except AccountError as exc:
        ACCOUNT_DELETIONS_TOTAL.labels(outcome=_OUTCOME_LABELS.get(type(exc), "error")).inc()
        if isinstance(exc, DeletionBlocked):
            raise HTTPException(
                status_code=exc.status_code,
                detail={"message": exc.message, "reason": exc.reason.value if exc.reason else None},
            )
        if isinstance(exc, TooManyAttempts):
            raise HTTPException(
                status_code=exc.status_code,
                detail=exc.message,
                headers={"Retry-After": str(exc.retry_after)},
            )
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    ACCOUNT_DELETIONS_TOTAL.labels(outcome="deleted").inc()
    return DeleteAccountResponse(redirect_to=redirect_to)
