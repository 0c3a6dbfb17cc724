"""
卖家钱包路由：余额、流水、提现申请、收款银行账户。
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from settlement.services.auth import require_role
from settlement.services.bank_account_service import (
    BankAccountError,
    BankAccountService,
    account_to_dict,
)
from settlement.services.payout_service import PayoutRequestError, PayoutService, payout_to_dict
from settlement.services.wallet_service import WalletService, transaction_to_dict

router = APIRouter(prefix="/v1/wallet")

seller_only = require_role("seller")


class PayoutCreateRequest(BaseModel):
    amount: Decimal
    bank_account_id: int | None = None
    notes: str | None = None


class BankAccountRequest(BaseModel):
    bank_name: str
    account_holder: str
    iban: str
    is_default: bool = False


@router.get("")
async def wallet_summary(user: dict = Depends(seller_only)):
    return JSONResponse(content={
        "code": 1,
        "wallet": WalletService().get_wallet_summary(user["user_id"]),
    })


@router.get("/transactions")
async def wallet_transactions(
    user: dict = Depends(seller_only),
    type: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    txs = WalletService().get_transactions(user["user_id"], limit, offset, type)
    return JSONResponse(content={
        "code": 1,
        "transactions": [transaction_to_dict(t) for t in txs],
    })


@router.post("/payouts")
async def create_payout(body: PayoutCreateRequest, user: dict = Depends(seller_only)):
    """
    发起提现申请。
    校验失败返回 {code: -1, error: INVALID_AMOUNT / INSUFFICIENT_BALANCE /
    OPEN_REQUEST_EXISTS / MISSING_BANK_ACCOUNT}。
    """
    result = PayoutService().create_request(
        user["user_id"], body.amount, body.bank_account_id, body.notes,
    )
    if isinstance(result, PayoutRequestError):
        return JSONResponse(content={"code": -1, "msg": result.message, "error": result.code})
    return JSONResponse(content={"code": 1, "payout": payout_to_dict(result)})


@router.get("/payouts")
async def list_payouts(user: dict = Depends(seller_only), limit: int = Query(20, ge=1, le=100)):
    requests = PayoutService().list_seller_requests(user["user_id"], limit)
    return JSONResponse(content={"code": 1, "payouts": [payout_to_dict(r) for r in requests]})


@router.post("/bank-accounts")
async def add_bank_account(body: BankAccountRequest, user: dict = Depends(seller_only)):
    try:
        account = BankAccountService().add_account(
            user["user_id"], body.bank_name, body.account_holder, body.iban, body.is_default,
        )
    except BankAccountError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "account": account_to_dict(account)})


@router.get("/bank-accounts")
async def list_bank_accounts(user: dict = Depends(seller_only)):
    accounts = BankAccountService().list_accounts(user["user_id"])
    return JSONResponse(content={"code": 1, "accounts": [account_to_dict(a) for a in accounts]})
