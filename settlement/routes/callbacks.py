"""
外部协作方回调路由：支付结果、签收通知。请求参数以 CALLBACK_KEY 做 HMAC-SHA256 签名。
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from settlement.models.schemas import InvalidTransitionError
from settlement.routes.orders import transition_error_response
from settlement.services.order_service import OrderNotFoundError
from settlement.services.settlement_events import SettlementEvents
from settlement.services.sign import callback_key, verify_sign

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/callbacks")


class PaymentCallback(BaseModel):
    order_ref: str
    payment_status: str
    sign: str


class DeliveryCallback(BaseModel):
    order_ref: str
    sign: str


def _bad_sign(kind: str, order_ref: str) -> JSONResponse:
    logger.warning("%s回调签名验证失败: order_ref=%s", kind, order_ref)
    return JSONResponse(status_code=403, content={"code": -1, "msg": "签名验证失败"})


@router.post("/payment")
async def payment_callback(body: PaymentCallback):
    params = {"order_ref": body.order_ref, "payment_status": body.payment_status}
    if not verify_sign(params, callback_key(), body.sign):
        return _bad_sign("支付", body.order_ref)

    try:
        result = SettlementEvents().handle_payment_callback(body.order_ref, body.payment_status)
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, **result})


@router.post("/delivery")
async def delivery_callback(body: DeliveryCallback):
    if not verify_sign({"order_ref": body.order_ref}, callback_key(), body.sign):
        return _bad_sign("签收", body.order_ref)

    try:
        result = SettlementEvents().handle_delivery(body.order_ref)
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except InvalidTransitionError as e:
        return transition_error_response(e)
    return JSONResponse(content={"code": 1, **result})
