"""
订单路由：买家下单 / 取消、订单查询、卖家与管理员推进订单状态。
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from settlement.models.schemas import InvalidTransitionError
from settlement.services.auth import get_current_user, require_role
from settlement.services.cart_service import CartService, issue_to_dict
from settlement.services.order_service import (
    OrderCreateError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderService,
    order_fees_to_dict,
    order_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


class CreateOrderRequest(BaseModel):
    shipping_address: dict
    notes: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str


def transition_error_response(e: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(content={
        "code": -1,
        "msg": str(e),
        "error": "INVALID_TRANSITION",
        "current": e.current,
        "allowed": e.allowed,
    })


def _visible_order(order, user: dict):
    """按角色过滤：买家只看自己的订单，卖家只看含自己商品的订单且只看自己的明细。"""
    if user["role"] == "admin":
        return order
    if user["role"] == "buyer":
        return order if order.buyer_id == user["user_id"] else None
    if user["user_id"] not in order.seller_ids():
        return None
    order.items = [i for i in order.items if i.seller_id == user["user_id"]]
    return order


@router.post("")
async def create_order(body: CreateOrderRequest, user: dict = Depends(require_role("buyer"))):
    """
    用当前购物车下单。

    成功返回 {code: 1, order_id, order_number}，
    失败返回 {code: -1, error: EMPTY_CART / STOCK_INSUFFICIENT:<商品> / VALIDATION_FAILED, ...}。
    """
    cart = CartService().get_or_create_cart(user["user_id"])
    try:
        order = OrderService().create_from_cart(
            cart.id, body.shipping_address, body.notes, buyer_id=user["user_id"],
        )
    except OrderCreateError as e:
        logger.warning("下单失败: buyer_id=%d, error=%s", user["user_id"], e.code)
        return JSONResponse(content={
            "code": -1,
            "msg": str(e),
            "error": e.code,
            "issues": [issue_to_dict(i) for i in e.issues],
        })

    return JSONResponse(content={
        "code": 1,
        "order_id": order.id,
        "order_number": order.order_number,
        "total_amount": str(order.total_amount),
    })


@router.get("")
async def list_orders(
    user: dict = Depends(require_role("buyer", "seller")),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
):
    svc = OrderService()
    if user["role"] == "buyer":
        orders, total = svc.list_buyer_orders(user["user_id"], page, per_page)
    else:
        orders, total = svc.list_seller_orders(user["user_id"], page, per_page)
    return JSONResponse(content={
        "code": 1,
        "orders": [order_to_dict(o) for o in orders],
        "total": total,
        "page": page,
        "per_page": per_page,
    })


@router.get("/{order_id}")
async def get_order(order_id: int, user: dict = Depends(get_current_user)):
    order = OrderService().get_order(order_id)
    order = _visible_order(order, user) if order else None
    if order is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})

    data = {"code": 1, "order": order_to_dict(order)}
    # 卖家看自己的结算扣费，管理员看订单级汇总
    if user["role"] == "seller":
        data["fees"] = order_fees_to_dict(order, user["user_id"])
    elif user["role"] == "admin":
        data["fees"] = order_fees_to_dict(order)
    return JSONResponse(content=data)


@router.post("/{order_id}/cancel")
async def cancel_order(order_id: int, user: dict = Depends(require_role("buyer", "admin"))):
    try:
        order = OrderService().cancel_order(
            order_id, user["user_id"], is_admin=user["role"] == "admin",
        )
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except OrderPermissionError as e:
        return JSONResponse(status_code=403, content={"code": -1, "msg": str(e)})
    except InvalidTransitionError as e:
        return transition_error_response(e)
    return JSONResponse(content={"code": 1, "msg": "订单已取消", "status": order.status})


@router.put("/{order_id}/status")
async def update_status(
    order_id: int,
    body: UpdateStatusRequest,
    user: dict = Depends(require_role("seller", "admin")),
):
    """卖家推进自己参与的订单，管理员可推进任意订单。"""
    svc = OrderService()
    order = svc.get_order(order_id)
    if order is None or _visible_order(order, user) is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})

    try:
        order = svc.update_status(
            order_id, body.status, user["user_id"], is_admin=user["role"] == "admin",
        )
    except OrderPermissionError as e:
        return JSONResponse(status_code=403, content={"code": -1, "msg": str(e)})
    except InvalidTransitionError as e:
        return transition_error_response(e)
    return JSONResponse(content={"code": 1, "status": order.status})
