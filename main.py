import os
import json
import random
import logging
from datetime import datetime
from typing import List, Optional
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from audit import log_activity
from config import settings
from database import create_document, get_db, get_document, get_documents, update_document, utcnow
from paymongo import PayMongoClient, PaymentGatewayError, verify_signature
from schemas import (
    AddressIn,
    CUSTOMER_CANCELLABLE,
    CancelOrderIn,
    CartAddIn,
    CartRemoveIn,
    CartSyncIn,
    CartUpdateIn,
    CheckoutPayload,
    ConfirmDeliveryIn,
    Order,
    OrderItem,
    OrderStatus,
    PaymentLinkAttachIn,
    PaymentLinkIn,
    PaymentStatus,
    Product,
    can_transition,
    format_address,
)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="SoleSpace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATE_CHANGING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
# Called by the gateway or cross-origin, never with the page's token
CSRF_EXEMPT_PATHS = {"/api/webhooks/paymongo", "/api/paymongo-proxy"}


class StockUnavailable(Exception):
    def __init__(self, message: str, available: int):
        super().__init__(message)
        self.message = message
        self.available = available


def error_body(message: str, **extra) -> dict:
    return {"success": False, "message": message, "error": message, **extra}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(error_body(str(exc.detail)), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        error_body("Validation failed", errors=jsonable_encoder(exc.errors())),
        status_code=422,
    )


@app.exception_handler(StockUnavailable)
async def stock_error_handler(request: Request, exc: StockUnavailable):
    return JSONResponse(error_body(exc.message, available=exc.available), status_code=400)


@app.middleware("http")
async def verify_csrf_token(request: Request, call_next):
    if (
        settings.CSRF_TOKEN
        and request.method in STATE_CHANGING_METHODS
        and request.url.path not in CSRF_EXEMPT_PATHS
        and request.headers.get("X-CSRF-TOKEN") != settings.CSRF_TOKEN
    ):
        return JSONResponse(error_body("CSRF token mismatch."), status_code=419)
    return await call_next(request)


# Dependencies

async def current_user_id(x_user_id: Optional[int] = Header(None)) -> Optional[int]:
    # Session handling lives in front of this API; it forwards the customer id
    return x_user_id


async def require_user(user_id: Optional[int] = Depends(current_user_id)) -> int:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def get_payment_gateway() -> PayMongoClient:
    return PayMongoClient()


def request_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# Utils

def product_to_client(doc):
    return {
        "id": doc.get("id"),
        "name": doc.get("name"),
        "brand": doc.get("brand"),
        "category": doc.get("category"),
        "price": float(doc.get("price", 0)),
        "stock_quantity": int(doc.get("stock_quantity", 0)),
        "image": doc.get("image"),
        "variants": doc.get("variants", []),
    }


def available_stock(product: dict, size: Optional[str], color: Optional[str]) -> int:
    # Variant stock wins when the line names both size and color
    if size and color:
        for v in product.get("variants") or []:
            if v.get("size") == size and v.get("color") == color:
                return int(v.get("quantity", 0))
    return int(product.get("stock_quantity", 0))


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def normalize_options(options: Optional[dict]) -> Optional[dict]:
    options = options or {}
    normalized = {}
    if options.get("color"):
        normalized["color"] = options["color"]
    if options.get("image"):
        normalized["image"] = options["image"]
    return normalized or None


def parse_options(raw) -> dict:
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


def cart_item_to_client(doc: dict, stock: Optional[int] = None) -> dict:
    return {
        "id": doc.get("id"),
        "product_id": doc.get("product_id"),
        "pid": doc.get("product_id"),
        "name": doc.get("product_name"),
        "price": float(doc.get("price", 0)),
        "size": doc.get("size"),
        "qty": doc.get("quantity"),
        "quantity": doc.get("quantity"),
        "image": doc.get("image"),
        "stock_quantity": stock if stock is not None else doc.get("stock_quantity"),
        "options": doc.get("options"),
    }


def address_to_client(doc: dict) -> dict:
    out = {k: v for k, v in doc.items() if k not in ("created_at", "updated_at")}
    out["full_address"] = format_address(AddressIn.model_construct(**doc))
    return out


def order_to_client(doc: dict) -> dict:
    created = doc.get("created_at")
    return {
        "id": doc.get("id"),
        "order_number": doc.get("order_number"),
        "status": doc.get("status"),
        "payment_status": doc.get("payment_status", PaymentStatus.pending.value),
        "payment_method": doc.get("payment_method", "paymongo"),
        "total_amount": doc.get("total_amount"),
        "items": doc.get("items", []),
        "items_count": len(doc.get("items", [])),
        "customer_name": doc.get("customer_name"),
        "customer_email": doc.get("customer_email"),
        "customer_phone": doc.get("customer_phone"),
        "shipping_address": doc.get("customer_address"),
        "paymongo_link_id": doc.get("paymongo_link_id"),
        "created_at": created.strftime("%Y-%m-%d %H:%M:%S") if isinstance(created, datetime) else created,
    }


def generate_order_number() -> str:
    return f"ORD-{datetime.now().strftime('%Y%m%d%H%M%S')}-{random.randint(0, 999):03d}"


async def get_product(product_id: int) -> Optional[dict]:
    return await get_document("product", {"id": product_id})


async def cart_total_count(user_id: int) -> int:
    items = await get_documents("cart_item", {"user_id": user_id}, limit=500)
    return sum(int(it.get("quantity", 0)) for it in items)


async def find_cart_line(user_id: int, product_id: int, size: Optional[str], options: Optional[dict]) -> Optional[dict]:
    return await get_document("cart_item", {
        "user_id": user_id,
        "product_id": product_id,
        "size": size,
        "options": options,
    })


async def adjust_stock(product: dict, size: Optional[str], color: Optional[str], delta: int) -> None:
    """Move product stock (and the matching variant's stock) by ``delta``."""
    db = await get_db()
    update = {"$inc": {"stock_quantity": delta}}
    if size and color:
        variants = [dict(v) for v in product.get("variants") or []]
        matched = False
        for v in variants:
            if v.get("size") == size and v.get("color") == color:
                v["quantity"] = int(v.get("quantity", 0)) + delta
                matched = True
        if matched:
            update["$set"] = {"variants": variants}
        else:
            logger.warning("Variant not found for stock change product=%s size=%s color=%s", product.get("id"), size, color)
    await db["product"].update_one({"id": product["id"]}, update)


# Health

@app.get("/")
async def root():
    return {"message": "SoleSpace Backend Running"}


@app.get("/test")
async def test():
    try:
        db = await get_db()
        colls = await db.list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": db.name,
            "connection_status": "Connected",
            "collections": colls[:10],
        }
    except Exception as e:
        return {"backend": "✅ Running", "database": f"❌ Error: {str(e)[:50]}"}


# Catalogue

SEED_PRODUCTS: List[dict] = [
    {
        "name": "Classic Leather Oxford",
        "brand": "SoleSpace",
        "description": "Hand-finished full-grain leather oxford.",
        "price": 3200.0,
        "stock_quantity": 20,
        "image": "https://images.unsplash.com/photo-1614252235316-8c857d38b5f4?q=80&w=1200&auto=format&fit=crop",
        "variants": [
            {"size": "41", "color": "Black", "quantity": 6},
            {"size": "42", "color": "Black", "quantity": 8},
            {"size": "42", "color": "Brown", "quantity": 6},
        ],
    },
    {
        "name": "Court Runner Sneaker",
        "brand": "Stride",
        "description": "Lightweight everyday sneaker with cushioned sole.",
        "price": 2450.0,
        "stock_quantity": 30,
        "image": "https://images.unsplash.com/photo-1542291026-7eec264c27ff?q=80&w=1200&auto=format&fit=crop",
        "variants": [
            {"size": "40", "color": "White", "quantity": 10},
            {"size": "41", "color": "White", "quantity": 10},
            {"size": "42", "color": "Red", "quantity": 10},
        ],
    },
    {
        "name": "Suede Chelsea Boot",
        "brand": "Maverick",
        "description": "Pull-on suede boot with elastic side panels.",
        "price": 4100.0,
        "stock_quantity": 12,
        "image": "https://images.unsplash.com/photo-1608256246200-53e635b5b65f?q=80&w=1200&auto=format&fit=crop",
        "variants": [
            {"size": "42", "color": "Tan", "quantity": 6},
            {"size": "43", "color": "Tan", "quantity": 6},
        ],
    },
    {
        "name": "Shoe Care Kit",
        "brand": "SoleSpace",
        "category": "accessories",
        "price": 650.0,
        "stock_quantity": 50,
    },
]


@app.post("/seed")
async def seed():
    db = await get_db()
    if await db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    for p in SEED_PRODUCTS:
        await create_document("product", Product(**p).model_dump())
    return {"seeded": True, "count": len(SEED_PRODUCTS)}


@app.get("/products")
async def list_products(q: Optional[str] = Query(None), brand: Optional[str] = Query(None)):
    filt = {}
    if q:
        filt["name"] = {"$regex": q, "$options": "i"}
    if brand:
        filt["brand"] = brand
    docs = await get_documents("product", filt, limit=200)
    return [product_to_client(d) for d in docs]


@app.get("/products/{product_id}")
async def show_product(product_id: int):
    doc = await get_product(product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return product_to_client(doc)


# Cart

@app.get("/api/cart")
async def get_cart(user_id: Optional[int] = Depends(current_user_id)):
    if user_id is None:
        return {"items": [], "count": 0}
    items = await get_documents("cart_item", {"user_id": user_id}, limit=500, sort=[("created_at", 1)])
    out = []
    for it in items:
        product = await get_product(it["product_id"])
        stock = None
        if product:
            stock = available_stock(product, it.get("size"), parse_options(it.get("options")).get("color"))
        out.append(cart_item_to_client(it, stock))
    return {"items": out, "count": sum(int(it.get("quantity", 0)) for it in items)}


@app.post("/api/cart/add")
async def add_to_cart(payload: CartAddIn, user_id: int = Depends(require_user)):
    product = await get_product(payload.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    options = normalize_options(payload.options)
    color = (options or {}).get("color")
    stock = available_stock(product, payload.size, color)

    existing = await find_cart_line(user_id, payload.product_id, payload.size, options)
    if existing:
        new_quantity = int(existing["quantity"]) + payload.quantity
        if stock < new_quantity:
            raise StockUnavailable(
                f"Cannot add more items. You already have {existing['quantity']} in cart.",
                available=stock,
            )
        item = await update_document("cart_item", {"id": existing["id"]}, {"quantity": new_quantity})
    else:
        if stock < payload.quantity:
            raise StockUnavailable("Insufficient stock available", available=stock)
        item = await create_document("cart_item", {
            "user_id": user_id,
            "product_id": payload.product_id,
            "product_name": product.get("name"),
            "price": float(product.get("price", 0)),
            "size": payload.size,
            "quantity": payload.quantity,
            "image": (options or {}).get("image") or product.get("image"),
            "stock_quantity": stock,
            "options": options,
        })

    return {
        "success": True,
        "message": "Item added to cart",
        "item": cart_item_to_client(item, stock),
        "total_count": await cart_total_count(user_id),
    }


@app.post("/api/cart/update")
async def update_cart(payload: CartUpdateIn, user_id: int = Depends(require_user)):
    item = await get_document("cart_item", {"user_id": user_id, "id": payload.id})
    if not item:
        raise HTTPException(status_code=404, detail="Cart item not found")
    product = await get_product(item["product_id"])
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    stock = available_stock(product, item.get("size"), parse_options(item.get("options")).get("color"))
    if stock < payload.quantity:
        raise StockUnavailable(f"Insufficient stock. Only {stock} available.", available=stock)

    item = await update_document("cart_item", {"id": item["id"]}, {"quantity": payload.quantity})
    return {
        "success": True,
        "message": "Cart updated",
        "item": cart_item_to_client(item, stock),
        "total_count": await cart_total_count(user_id),
    }


@app.post("/api/cart/remove")
async def remove_from_cart(payload: CartRemoveIn, user_id: int = Depends(require_user)):
    db = await get_db()
    res = await db["cart_item"].delete_one({"user_id": user_id, "id": payload.id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {
        "success": True,
        "message": "Item removed from cart",
        "total_count": await cart_total_count(user_id),
    }


@app.post("/api/cart/clear")
async def clear_cart(user_id: int = Depends(require_user)):
    db = await get_db()
    await db["cart_item"].delete_many({"user_id": user_id})
    return {"success": True, "message": "Cart cleared"}


@app.post("/api/cart/sync")
async def sync_cart(payload: CartSyncIn, user_id: int = Depends(require_user)):
    """Merge a guest cart into the user's cart after login.

    Quantities are clamped to the variant (or product) stock. Lines for
    unknown or sold-out products cannot be stored and come back in
    ``skipped`` so the client keeps them. A line already in the cart keeps
    the larger of the two quantities, so replaying the same guest cart
    leaves the cart unchanged.
    """
    skipped = []
    for item in payload.items:
        product = await get_product(item.pid)
        stock = available_stock(product, item.size, item.color) if product else 0
        if stock <= 0:
            logger.info("Cart sync skipped product=%s qty=%s stock=%s", item.pid, item.qty, stock)
            skipped.append(item.pid)
            continue

        options = normalize_options({"color": item.color, "image": item.image})
        existing = await find_cart_line(user_id, item.pid, item.size, options)
        if existing:
            await update_document("cart_item", {"id": existing["id"]}, {
                "quantity": min(max(int(existing["quantity"]), item.qty), stock),
            })
        else:
            await create_document("cart_item", {
                "user_id": user_id,
                "product_id": item.pid,
                "product_name": product.get("name"),
                "price": float(product.get("price", 0)),
                "size": item.size,
                "quantity": min(item.qty, stock),
                "image": item.image or product.get("image"),
                "stock_quantity": stock,
                "options": options,
            })

    items = await get_documents("cart_item", {"user_id": user_id}, limit=500, sort=[("created_at", 1)])
    return {
        "success": True,
        "message": "Cart synced successfully",
        "items": [cart_item_to_client(it) for it in items],
        "total_count": sum(int(it.get("quantity", 0)) for it in items),
        "skipped": skipped,
    }


# Addresses

@app.get("/api/user/addresses")
async def list_addresses(user_id: int = Depends(require_user)):
    docs = await get_documents(
        "user_address", {"user_id": user_id}, sort=[("is_default", -1), ("created_at", -1)]
    )
    return {"success": True, "addresses": [address_to_client(d) for d in docs]}


@app.post("/api/user/addresses", status_code=201)
async def create_address(payload: AddressIn, user_id: int = Depends(require_user)):
    db = await get_db()
    data = payload.model_dump()
    if data["is_default"]:
        await db["user_address"].update_many({"user_id": user_id}, {"$set": {"is_default": False}})
    # First address becomes the default
    if await db["user_address"].count_documents({"user_id": user_id}) == 0:
        data["is_default"] = True
    address = await create_document("user_address", {**data, "user_id": user_id})
    return {"success": True, "message": "Address added successfully", "address": address_to_client(address)}


@app.put("/api/user/addresses/{address_id}")
async def update_address(address_id: int, payload: AddressIn, user_id: int = Depends(require_user)):
    db = await get_db()
    if not await get_document("user_address", {"user_id": user_id, "id": address_id}):
        raise HTTPException(status_code=404, detail="Address not found")
    if payload.is_default:
        await db["user_address"].update_many(
            {"user_id": user_id, "id": {"$ne": address_id}}, {"$set": {"is_default": False}}
        )
    address = await update_document("user_address", {"id": address_id}, payload.model_dump())
    return {"success": True, "message": "Address updated successfully", "address": address_to_client(address)}


@app.delete("/api/user/addresses/{address_id}")
async def delete_address(address_id: int, user_id: int = Depends(require_user)):
    db = await get_db()
    address = await get_document("user_address", {"user_id": user_id, "id": address_id})
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    if address.get("is_default"):
        successor = await get_document("user_address", {"user_id": user_id, "id": {"$ne": address_id}})
        if successor:
            await update_document("user_address", {"id": successor["id"]}, {"is_default": True})
    await db["user_address"].delete_one({"id": address_id})
    return {"success": True, "message": "Address deleted successfully"}


@app.post("/api/user/addresses/{address_id}/set-default")
async def set_default_address(address_id: int, user_id: int = Depends(require_user)):
    db = await get_db()
    if not await get_document("user_address", {"user_id": user_id, "id": address_id}):
        raise HTTPException(status_code=404, detail="Address not found")
    await db["user_address"].update_many({"user_id": user_id}, {"$set": {"is_default": False}})
    address = await update_document("user_address", {"id": address_id}, {"is_default": True})
    return {"success": True, "message": "Default address updated", "address": address_to_client(address)}


# Checkout / Orders

@app.post("/api/checkout/create-order")
async def create_order(
    payload: CheckoutPayload,
    request: Request,
    user_id: Optional[int] = Depends(current_user_id),
):
    db = await get_db()

    # Check every line before touching stock
    checked = []
    for item in payload.items:
        product = await get_product(item.pid)
        if not product:
            raise HTTPException(status_code=404, detail=f"Product not found: {item.name} (ID: {item.pid})")
        options = parse_options(item.options)
        color = item.color or options.get("color")
        if item.size and color:
            variant = next(
                (v for v in product.get("variants") or [] if v.get("size") == item.size and v.get("color") == color),
                None,
            )
            if variant is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"Variant not found for {product['name']} (Size {item.size}, Color {color})",
                )
            if int(variant.get("quantity", 0)) < item.qty:
                raise StockUnavailable(
                    f"Insufficient stock for {product['name']} (Size {item.size}, Color {color}). Available: {variant.get('quantity', 0)}",
                    available=int(variant.get("quantity", 0)),
                )
        elif int(product.get("stock_quantity", 0)) < item.qty:
            raise StockUnavailable(
                f"Insufficient stock for {product['name']}. Available: {product.get('stock_quantity', 0)}",
                available=int(product.get("stock_quantity", 0)),
            )
        checked.append((item, product, color, options))

    # Prices come from the catalogue, not the client
    order_items: List[OrderItem] = []
    total = 0.0
    for item, product, color, options in checked:
        price = float(product.get("price", 0))
        subtotal = price * item.qty
        total += subtotal
        order_items.append(OrderItem(
            product_id=product["id"],
            product_name=product["name"],
            price=price,
            quantity=item.qty,
            subtotal=subtotal,
            size=item.size,
            color=color,
            product_image=options.get("image") or item.image or product.get("image"),
        ))

    order = Order(
        order_number=generate_order_number(),
        customer_id=user_id,
        items=order_items,
        total_amount=round(total, 2),
        payment_method=payload.payment_method or "paymongo",
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        customer_address=payload.shipping_address,
        address_id=payload.address_id,
        shipping_region=payload.shipping_region,
        shipping_province=payload.shipping_province,
        shipping_city=payload.shipping_city,
        shipping_barangay=payload.shipping_barangay,
        shipping_postal_code=payload.shipping_postal_code,
        shipping_address_line=payload.shipping_address_line,
    )
    saved = await create_document("order", order.model_dump(mode="json"))

    for item, product, color, _ in checked:
        await adjust_stock(product, item.size, color, -item.qty)

    # Only the ordered lines leave the cart; unselected ones stay
    if user_id is not None:
        ordered_ids = [int(item.id) for item in payload.items if item.id.isdigit()]
        await db["cart_item"].delete_many({"user_id": user_id, "id": {"$in": ordered_ids}})

    logger.info("Order created id=%s number=%s customer=%s total=%s", saved["id"], saved["order_number"], user_id, saved["total_amount"])
    await log_activity(
        "create_order", "order", saved["id"], actor_id=user_id,
        metadata={"order_number": saved["order_number"], "total_amount": saved["total_amount"]},
        request_meta=request_meta(request),
    )
    return {
        "success": True,
        "message": "Order created successfully",
        "order": order_to_client(saved),
        "order_id": saved["id"],
        "order_number": saved["order_number"],
    }


async def get_visible_order(order_id: int, user_id: Optional[int]) -> dict:
    order = await get_document("order", {"id": order_id})
    # Guest orders are reachable by id; customer orders only by their owner
    if not order or (order.get("customer_id") is not None and order.get("customer_id") != user_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/api/orders")
async def my_orders(user_id: int = Depends(require_user)):
    docs = await get_documents("order", {"customer_id": user_id}, limit=200, sort=[("created_at", -1)])
    return {"success": True, "orders": [order_to_client(d) for d in docs]}


@app.get("/api/orders/{order_id}/details")
async def order_details(order_id: int, user_id: Optional[int] = Depends(current_user_id)):
    order = await get_visible_order(order_id, user_id)
    return {"success": True, "order": order_to_client(order)}


@app.post("/api/orders/{order_id}/update-payment-link")
async def update_payment_link(
    order_id: int,
    payload: PaymentLinkAttachIn,
    user_id: Optional[int] = Depends(current_user_id),
):
    order = await get_visible_order(order_id, user_id)
    await update_document("order", {"id": order["id"]}, {"paymongo_link_id": payload.paymongo_link_id})
    logger.info("Order %s updated with PayMongo link %s", order["order_number"], payload.paymongo_link_id)
    return {"success": True}


@app.post("/api/paymongo-proxy")
async def paymongo_proxy(payload: PaymentLinkIn, gateway: PayMongoClient = Depends(get_payment_gateway)):
    if not payload.amount or payload.amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")
    try:
        return await gateway.create_link(payload.amount, payload.description)
    except PaymentGatewayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@app.post("/orders/cancel")
async def cancel_order(payload: CancelOrderIn, request: Request, user_id: int = Depends(require_user)):
    order = await get_document("order", {"id": payload.order_id, "customer_id": user_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    status = OrderStatus(order["status"])
    if status not in CUSTOMER_CANCELLABLE or not can_transition(status, OrderStatus.cancelled):
        raise HTTPException(status_code=400, detail="Only pending orders can be cancelled")

    # Flip status first so a concurrent cancel cannot restore stock twice
    db = await get_db()
    res = await db["order"].update_one(
        {"id": order["id"], "status": order["status"]},
        {"$set": {
            "status": OrderStatus.cancelled.value,
            "cancel_reason": payload.reason,
            "cancel_note": payload.note,
            "updated_at": utcnow(),
        }},
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=409, detail="Order status changed, please refresh")

    for item in order.get("items", []):
        product = await get_product(item["product_id"])
        if product:
            await adjust_stock(product, item.get("size"), item.get("color"), item["quantity"])

    await log_activity(
        "cancel_order", "order", order["id"], actor_id=user_id,
        metadata={"reason": payload.reason, "note": payload.note},
        request_meta=request_meta(request),
    )
    return {"success": True, "message": "Order cancelled successfully. Inventory has been restored."}


@app.post("/orders/confirm-delivery")
async def confirm_delivery(payload: ConfirmDeliveryIn, request: Request, user_id: int = Depends(require_user)):
    order = await get_document("order", {"id": payload.order_id, "customer_id": user_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if not can_transition(order["status"], OrderStatus.delivered):
        raise HTTPException(status_code=400, detail="Can only confirm orders that have been shipped")

    db = await get_db()
    res = await db["order"].update_one(
        {"id": order["id"], "status": order["status"]},
        {"$set": {"status": OrderStatus.delivered.value, "updated_at": utcnow()}},
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=409, detail="Order status changed, please refresh")
    await log_activity("confirm_delivery", "order", order["id"], actor_id=user_id, request_meta=request_meta(request))
    return {"success": True, "message": "Order confirmed as delivered"}


@app.post("/api/webhooks/paymongo")
async def paymongo_webhook(request: Request):
    body = await request.body()
    if settings.PAYMONGO_WEBHOOK_SECRET and not verify_signature(
        body, request.headers.get("Paymongo-Signature"), settings.PAYMONGO_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    attributes = as_dict(as_dict(event).get("data")).get("attributes")
    event_type = as_dict(attributes).get("type")
    event_data = as_dict(attributes).get("data")
    logger.info("PayMongo webhook received type=%s", event_type)
    if not event_type or not event_data or not isinstance(event_data, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    if event_type not in ("link.payment.paid", "link.payment.failed"):
        return {"message": "Event received"}

    link_id = as_dict(event_data.get("attributes")).get("payment_link_id")
    if not link_id:
        raise HTTPException(status_code=400, detail="Missing payment_link_id")
    order = await get_document("order", {"paymongo_link_id": link_id})

    if event_type == "link.payment.failed":
        if order:
            logger.info("Payment failed for order %s", order["order_number"])
        return {"message": "Payment failure recorded"}

    if not order:
        logger.warning("Order not found for payment_link_id=%s", link_id)
        raise HTTPException(status_code=404, detail="Order not found")
    await update_document("order", {"id": order["id"]}, {
        "payment_status": PaymentStatus.paid.value,
        "paymongo_payment_id": event_data.get("id"),
        "paid_at": utcnow(),
    })
    await log_activity(
        "payment_paid", "order", order["id"],
        metadata={"payment_id": event_data.get("id"), "payment_link_id": link_id},
    )
    logger.info("Order payment confirmed order=%s payment=%s", order["order_number"], event_data.get("id"))
    return {"message": "Payment processed"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
