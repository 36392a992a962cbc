"""
Credit API Routes

Balance, history, consumption and transfers for the authenticated user.
"""

from fastapi import APIRouter, Query, status

from app.api.dependencies import CurrentUserId
from app.domain.credits import (
    BalanceResponse,
    ConsumeCreditsRequest,
    TransactionHistoryResponse,
    TransactionResponse,
    TransferCreditsRequest,
    TransferResponse,
    ValidateCreditsRequest,
    ValidateCreditsResponse,
)
from app.infrastructure.db.dependencies import LedgerDep


router = APIRouter()


@router.get("/credits/balance", response_model=BalanceResponse)
async def get_balance(user_id: CurrentUserId, ledger: LedgerDep):
    """
    Current balance.

    ``total_available`` is what a debit may spend right now; lapsed
    monthly credits are expired before the balance is reported.
    """
    return await ledger.get_balance(user_id)


@router.get("/credits/history", response_model=TransactionHistoryResponse)
async def get_history(
    user_id: CurrentUserId,
    ledger: LedgerDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    rows = await ledger.get_history(user_id, limit=limit, offset=offset)
    return TransactionHistoryResponse(
        items=[TransactionResponse.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )


@router.post("/credits/consume", response_model=BalanceResponse)
async def consume_credits(
    payload: ConsumeCreditsRequest,
    user_id: CurrentUserId,
    ledger: LedgerDep,
):
    """
    Spend credits. Responds 402 when the balance does not cover the amount.
    """
    return await ledger.consume(
        user_id,
        payload.amount,
        description=payload.description,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        idempotency_key=payload.idempotency_key,
    )


@router.post("/credits/validate", response_model=ValidateCreditsResponse)
async def validate_credits(
    payload: ValidateCreditsRequest,
    user_id: CurrentUserId,
    ledger: LedgerDep,
):
    """Whether a debit of ``amount`` would succeed right now. Nothing is spent."""
    balance = await ledger.get_balance(user_id)
    return ValidateCreditsResponse(
        has_enough_credits=balance.total_available >= payload.amount,
        required_amount=payload.amount,
        total_available=balance.total_available,
    )


@router.post("/credits/transfer", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def transfer_credits(
    payload: TransferCreditsRequest,
    user_id: CurrentUserId,
    ledger: LedgerDep,
):
    """
    Send credits to another account. Responds 402 when the balance does
    not cover the amount and 404 when the recipient does not exist.
    """
    debit, credit = await ledger.transfer(
        user_id,
        payload.to_user_id,
        payload.amount,
        description=payload.description,
        idempotency_key=payload.idempotency_key,
    )
    return TransferResponse(
        debit=TransactionResponse.model_validate(debit),
        credit=TransactionResponse.model_validate(credit),
        balance=await ledger.get_balance(user_id),
    )
