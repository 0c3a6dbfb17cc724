"""
购物车路由（买家）：查看、加购、改数量、删除、结算前校验。
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from settlement.services.auth import require_role
from settlement.services.cart_service import (
    CartError,
    CartNotFoundError,
    CartService,
    cart_to_dict,
    issue_to_dict,
)

router = APIRouter(prefix="/v1/cart")

buyer_only = require_role("buyer")


class AddItemRequest(BaseModel):
    offer_id: int
    quantity: int = Field(1, ge=1)


class UpdateQuantityRequest(BaseModel):
    quantity: int


@router.get("")
async def get_cart(user: dict = Depends(buyer_only)):
    cart = CartService().get_or_create_cart(user["user_id"])
    return JSONResponse(content={"code": 1, "cart": cart_to_dict(cart)})


@router.post("/items")
async def add_item(body: AddItemRequest, user: dict = Depends(buyer_only)):
    try:
        item = CartService().add_item(user["user_id"], body.offer_id, body.quantity)
    except CartError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={
        "code": 1,
        "item": {
            "id": item.id,
            "offer_id": item.offer_id,
            "product_name": item.product_name,
            "quantity": item.quantity,
            "price_at_addition": str(item.price_at_addition),
        },
    })


@router.put("/items/{item_id}")
async def update_item(item_id: int, body: UpdateQuantityRequest, user: dict = Depends(buyer_only)):
    """数量小于 1 时移除该商品。"""
    try:
        CartService().update_item_quantity(user["user_id"], item_id, body.quantity)
    except CartNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except CartError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "已更新"})


@router.delete("/items/{item_id}")
async def remove_item(item_id: int, user: dict = Depends(buyer_only)):
    try:
        CartService().remove_item(user["user_id"], item_id)
    except CartNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except CartError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "已移除"})


@router.get("/validate")
async def validate_cart(user: dict = Depends(buyer_only)):
    """结算前校验：valid 为 false 时存在阻止下单的问题。"""
    svc = CartService()
    cart = svc.get_or_create_cart(user["user_id"])
    issues = svc.validate_cart(cart.id)
    return JSONResponse(content={
        "code": 1,
        "valid": not any(i.blocking for i in issues),
        "issues": [issue_to_dict(i) for i in issues],
    })


@router.post("/sync-prices")
async def sync_prices(user: dict = Depends(buyer_only)):
    svc = CartService()
    cart = svc.get_or_create_cart(user["user_id"])
    updated = svc.sync_prices(cart.id)
    return JSONResponse(content={"code": 1, "updated": updated})
