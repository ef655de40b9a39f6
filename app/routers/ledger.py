from fastapi import APIRouter, Body, Depends, Response, status
from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.core.logging import get_logger
from app.deps import get_ledger
from app.services.ledger import Ledger

router = APIRouter()
log = get_logger(__name__)


class AccountRequest(BaseModel):
    account: str = Field(default_factory=lambda: get_settings().default_account, min_length=1)


class ChargeRequest(AccountRequest):
    charges: int = Field(default_factory=lambda: get_settings().default_charges, gt=0)


@router.post("/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_account(
    body: AccountRequest | None = Body(default=None),
    ledger: Ledger = Depends(get_ledger),
):
    """Set the account balance back to the default."""
    body = body or AccountRequest()
    await ledger.reset(body.account)
    log.info("account_reset", account=body.account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/get")
async def get_balance(
    body: AccountRequest | None = Body(default=None),
    ledger: Ledger = Depends(get_ledger),
):
    body = body or AccountRequest()
    balance = await ledger.get(body.account)
    log.info("balance_read", account=body.account, balance=balance)
    return {"balance": balance}


@router.post("/charge")
async def charge_account(
    body: ChargeRequest | None = Body(default=None),
    ledger: Ledger = Depends(get_ledger),
):
    """Charge the account; an unaffordable charge comes back with isAuthorized=false."""
    body = body or ChargeRequest()
    log.info("charge_requested", account=body.account, charges=body.charges)
    result = await ledger.charge(body.account, body.charges)
    log.info(
        "charge_completed",
        account=body.account,
        charges=result.charges,
        balance=result.remaining_balance,
        is_authorized=result.is_authorized,
    )
    return result.model_dump(by_alias=True)
