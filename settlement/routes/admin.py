"""
管理后台路由：登录、提现审核与打款、费率设置、钱包对账、订单费用复核。
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from settlement.models.schemas import InvalidTransitionError
from settlement.routes.orders import transition_error_response
from settlement.services.auth import authenticate, require_role
from settlement.services.bank_account_service import BankAccountService
from settlement.services.order_service import OrderNotFoundError, OrderService
from settlement.services.payout_service import PayoutNotFoundError, PayoutService, payout_to_dict
from settlement.services.platform_config import (
    PlatformConfigError,
    fee_settings_dict,
    load_fee_config,
    save_fee_settings,
)
from settlement.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")

admin_only = require_role("admin")


class LoginRequest(BaseModel):
    username: str
    password: str


class PayoutReviewRequest(BaseModel):
    notes: str | None = None


class PayoutCompleteRequest(BaseModel):
    transaction_reference: str


class FeeSettingsRequest(BaseModel):
    commission_enabled: bool | None = None
    marketplace_fee_rate: str | None = None
    withholding_tax_rate: str | None = None


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。
    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        return JSONResponse(content=authenticate(body.username, body.password))
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 提现审核 ──────────────────────────────────────────────


@router.get("/payouts")
async def list_payouts(
    admin: dict = Depends(admin_only),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    svc = PayoutService()
    return JSONResponse(content={
        "code": 1,
        "payouts": [payout_to_dict(r) for r in svc.list_requests(status, limit)],
        "statistics": svc.get_statistics(),
    })


@router.get("/payouts/{request_id}")
async def payout_detail(request_id: int, admin: dict = Depends(admin_only)):
    """申请详情，附带完整 IBAN 供打款使用。"""
    try:
        request = PayoutService().get_request(request_id)
    except PayoutNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})

    data = payout_to_dict(request)
    if request.bank_account_id:
        data["iban"] = BankAccountService().reveal_iban(request.bank_account_id)
    return JSONResponse(content={"code": 1, "payout": data})


def _run_payout_action(action, request_id: int, *args) -> JSONResponse:
    try:
        request = action(request_id, *args)
    except PayoutNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except InvalidTransitionError as e:
        return transition_error_response(e)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "payout": payout_to_dict(request)})


@router.post("/payouts/{request_id}/approve")
async def approve_payout(request_id: int, body: PayoutReviewRequest, admin: dict = Depends(admin_only)):
    return _run_payout_action(PayoutService().approve, request_id, admin["user_id"], body.notes)


@router.post("/payouts/{request_id}/reject")
async def reject_payout(request_id: int, body: PayoutReviewRequest, admin: dict = Depends(admin_only)):
    return _run_payout_action(PayoutService().reject, request_id, admin["user_id"], body.notes)


@router.post("/payouts/{request_id}/processing")
async def process_payout(request_id: int, admin: dict = Depends(admin_only)):
    return _run_payout_action(PayoutService().mark_processing, request_id, admin["user_id"])


@router.post("/payouts/{request_id}/complete")
async def complete_payout(request_id: int, body: PayoutCompleteRequest, admin: dict = Depends(admin_only)):
    """打款完成。余额不足时申请变为 failed，返回 code -1。"""
    try:
        request = PayoutService().complete(request_id, body.transaction_reference, admin["user_id"])
    except PayoutNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except InvalidTransitionError as e:
        return transition_error_response(e)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})

    if request.status == "failed":
        return JSONResponse(content={
            "code": -1,
            "msg": request.admin_notes or "打款失败",
            "error": "INSUFFICIENT_BALANCE",
            "payout": payout_to_dict(request),
        })
    return JSONResponse(content={"code": 1, "payout": payout_to_dict(request)})


# ── 费率设置 ──────────────────────────────────────────────


@router.get("/settings/fees")
async def get_fee_settings(admin: dict = Depends(admin_only)):
    return JSONResponse(content={"code": 1, "settings": fee_settings_dict(load_fee_config())})


@router.put("/settings/fees")
async def update_fee_settings(body: FeeSettingsRequest, admin: dict = Depends(admin_only)):
    try:
        config = save_fee_settings(
            body.commission_enabled, body.marketplace_fee_rate, body.withholding_tax_rate,
        )
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "settings": fee_settings_dict(config)})


# ── 对账 ──────────────────────────────────────────────────


@router.get("/wallets/{seller_id}/reconcile")
async def reconcile_wallet(seller_id: int, admin: dict = Depends(admin_only)):
    return JSONResponse(content={"code": 1, "result": WalletService().reconcile(seller_id)})


@router.get("/orders/{order_id}/fees/verify")
async def verify_order_fees(order_id: int, admin: dict = Depends(admin_only)):
    try:
        result = OrderService().verify_order_fees(order_id)
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "result": result})
