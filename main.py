import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, ValidationError as PydanticValidationError
from pymongo.errors import AutoReconnect, DuplicateKeyError, ExecutionTimeout, PyMongoError

import catalog
import database
import orders
from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from database import create_document, ensure_indexes, get_db, get_documents, parse_object_id, serialize
from demand import aggregate_pending_demand
from errors import Conflict, DomainError, NotFound, StoreUnavailable, ValidationError
from integrity import reconcile_brands
from logging_config import configure_logging
from schemas import Retailer, User

configure_logging()
logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("Index creation failed")
    yield


app = FastAPI(title="Order Desk API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping

def _error_response(status_code: int, kind: str, message: str, retryable: bool = False) -> JSONResponse:
    content = {"error": message, "kind": kind}
    if retryable:
        content["retryable"] = True
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return _error_response(exc.status_code, exc.kind, exc.message, exc.retryable)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"] if part != "body")
    return _error_response(ValidationError.status_code, ValidationError.kind, f"{location}: {first['msg']}")


@app.exception_handler(PydanticValidationError)
async def model_validation_handler(request: Request, exc: PydanticValidationError):
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return _error_response(ValidationError.status_code, ValidationError.kind, f"{location}: {first['msg']}")


@app.exception_handler(AutoReconnect)
@app.exception_handler(ExecutionTimeout)
async def store_timeout_handler(request: Request, exc: PyMongoError):
    logger.error("Store unavailable", path=request.url.path, error=str(exc))
    return _error_response(StoreUnavailable.status_code, StoreUnavailable.kind, "Database temporarily unavailable", True)


# Utility helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AuthRequest(BaseModel):
    email: EmailStr
    password: str


class OrderItemRequest(BaseModel):
    productId: Optional[str] = None
    productName: Optional[str] = None
    brandName: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[int] = None


class OrderCreate(BaseModel):
    counterName: Optional[str] = None
    bit: Optional[str] = None
    totalItems: Optional[int] = None
    totalAmount: Optional[float] = None
    items: List[OrderItemRequest] = []
    orderDate: Optional[datetime] = None


class OrderUpdate(BaseModel):
    counterName: Optional[str] = None
    bit: Optional[str] = None
    status: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    totalItems: Optional[int] = None
    totalAmount: Optional[float] = None
    items: Optional[List[OrderItemRequest]] = None


class StatusUpdate(BaseModel):
    status: Optional[str] = None


class CleanupRequest(BaseModel):
    orderIds: List[str] = []


class ProductRequest(BaseModel):
    name: Optional[str] = None
    brandId: Optional[str] = None
    order: Optional[int] = None


class ProductRank(BaseModel):
    productId: str
    order: int


class ProductReorder(BaseModel):
    productOrders: List[ProductRank]


class BrandRequest(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None


class BrandRank(BaseModel):
    brandId: str
    order: int


class BrandReorder(BaseModel):
    brandOrders: List[BrandRank]


class RetailerRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    bit: Optional[str] = None


# Auth helpers

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user_docs = get_documents(db, "user", {"email": email}, limit=1)
    if not user_docs or not user_docs[0].get("is_active", True):
        raise credentials_exception
    return user_docs[0]


@app.get("/")
def read_root():
    return {"message": "Order Desk API"}


# Helper to accept either JSON or form for legacy compatibility
async def parse_auth_request(request: Request) -> AuthRequest:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        email = (form.get("username") or form.get("email") or "").lower()
        password = form.get("password") or ""
        return AuthRequest(email=email, password=password)
    data = await request.json()
    return AuthRequest(**data)


# Auth routes
@app.post("/auth/register", response_model=Token)
async def register(request: Request, db=Depends(get_db)):
    auth = await parse_auth_request(request)

    existing = get_documents(db, "user", {"email": auth.email}, limit=1)
    if existing:
        raise Conflict("Email already registered")

    user = User(email=auth.email, name=auth.email.split("@")[0], password_hash=get_password_hash(auth.password))
    try:
        create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already registered")

    token = create_access_token({"sub": user.email})
    return Token(access_token=token)


@app.post("/auth/token", response_model=Token)
async def login(request: Request, db=Depends(get_db)):
    auth = await parse_auth_request(request)

    user_docs = get_documents(db, "user", {"email": auth.email}, limit=1)
    if not user_docs:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user = user_docs[0]
    if not verify_password(auth.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token({"sub": auth.email})
    return Token(access_token=token)


# Orders
@app.get("/api/orders")
def list_orders(bit: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None,
                db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(orders.list_orders(db, bit=bit, status=status, search=search))


@app.post("/api/orders", status_code=201)
def create_order(req: OrderCreate, db=Depends(get_db), _: dict = Depends(get_current_user)):
    order = orders.create_order(
        db,
        counterName=req.counterName,
        bit=req.bit,
        totalItems=req.totalItems,
        totalAmount=req.totalAmount,
        items=[item.model_dump(exclude_none=True) for item in req.items],
        orderDate=req.orderDate,
    )
    return serialize(order)


@app.get("/api/orders/stats/dashboard")
def dashboard_stats(db=Depends(get_db), _: dict = Depends(get_current_user)):
    return orders.dashboard_stats(db)


@app.get("/api/orders/recent/{limit}")
def recent_orders(limit: int, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(orders.recent_orders(db, limit=limit if limit > 0 else 3))


@app.get("/api/orders/pending-demand")
def pending_demand(bit: Optional[str] = None, brand: Optional[str] = None,
                   db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(aggregate_pending_demand(db, bit=bit, brand=brand))


@app.post("/api/orders/cleanup")
def cleanup_orders(req: CleanupRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return orders.cleanup_old_completed(db, req.orderIds)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(orders.get_order(db, order_id))


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, req: OrderUpdate, db=Depends(get_db), _: dict = Depends(get_current_user)):
    changes = req.model_dump(exclude_unset=True)
    if changes.get("items") is not None:
        changes["items"] = [
            {k: v for k, v in item.items() if v is not None} for item in changes["items"]
        ]
    return serialize(orders.update_order(db, order_id, changes))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, req: StatusUpdate, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(orders.update_status(db, order_id, req.status))


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    orders.delete_order(db, order_id)
    return {"message": "Order deleted successfully"}


# Products
@app.get("/api/products")
def list_products(brand: Optional[str] = None, search: Optional[str] = None,
                  db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.list_products(db, brand=brand, search=search))


@app.get("/api/products/brands/unique")
def unique_brand_names(db=Depends(get_db), _: dict = Depends(get_current_user)):
    return catalog.brand_names(db)


@app.post("/api/products", status_code=201)
def create_product(req: ProductRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    if not req.name or not req.brandId:
        raise ValidationError("Name and brandId are required")
    return serialize(catalog.create_product(db, req.name, req.brandId, order=req.order or 0))


@app.put("/api/products/order")
def reorder_products(req: ProductReorder, db=Depends(get_db), _: dict = Depends(get_current_user)):
    entries = [{"id": rank.productId, "order": rank.order} for rank in req.productOrders]
    return catalog.reorder_products(db, entries)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.get_product(db, product_id))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, req: ProductRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    if not req.name or not req.brandId:
        raise ValidationError("Name and brandId are required")
    return serialize(catalog.update_product(db, product_id, req.name, req.brandId, order=req.order))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    catalog.delete_product(db, product_id)
    return {"message": "Product deleted successfully"}


# Brands
@app.get("/api/brands")
def list_brands(db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.list_brands(db))


@app.post("/api/brands", status_code=201)
def create_brand(req: BrandRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.create_brand(db, req.name, image=req.image))


@app.put("/api/brands/order")
def reorder_brands(req: BrandReorder, db=Depends(get_db), _: dict = Depends(get_current_user)):
    entries = [{"id": rank.brandId, "order": rank.order} for rank in req.brandOrders]
    return catalog.reorder_brands(db, entries)


@app.post("/api/brands/cleanup")
def cleanup_brands(db=Depends(get_db), _: dict = Depends(get_current_user)):
    result = reconcile_brands(db)
    return {"message": "Brand cleanup completed successfully", **result}


@app.get("/api/brands/{brand_id}")
def get_brand(brand_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.get_brand(db, brand_id))


@app.put("/api/brands/{brand_id}")
def update_brand(brand_id: str, req: BrandRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(catalog.update_brand(db, brand_id, req.name, image=req.image))


@app.delete("/api/brands/{brand_id}")
def delete_brand(brand_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    catalog.delete_brand(db, brand_id)
    return {"message": "Brand deleted successfully"}


# Retailers
def _retailer_fields(req: RetailerRequest) -> Retailer:
    if not req.name or not req.phone or not req.bit:
        raise ValidationError("Name, phone, and bit are required")
    return Retailer(name=req.name.strip(), phone=req.phone.strip(), bit=req.bit.strip())


def _get_retailer(db, retailer_id: str) -> dict:
    retailer = db.retailer.find_one({"_id": parse_object_id(retailer_id, "Retailer")})
    if not retailer:
        raise NotFound("Retailer not found")
    return retailer


@app.get("/api/retailers")
def list_retailers(bit: Optional[str] = None, search: Optional[str] = None,
                   db=Depends(get_db), _: dict = Depends(get_current_user)):
    query = {}
    if bit and bit != "all":
        query["bit"] = bit
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"phone": pattern}, {"bit": pattern}]
    return serialize(list(db.retailer.find(query).sort("name", 1)))


@app.get("/api/retailers/bits/unique")
def unique_bits(db=Depends(get_db), _: dict = Depends(get_current_user)):
    return sorted(db.retailer.distinct("bit"))


@app.get("/api/retailers/bit/{bit}")
def retailers_by_bit(bit: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(list(db.retailer.find({"bit": bit}).sort("name", 1)))


@app.get("/api/retailers/{retailer_id}")
def get_retailer(retailer_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    return serialize(_get_retailer(db, retailer_id))


@app.post("/api/retailers", status_code=201)
def create_retailer(req: RetailerRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    retailer = _retailer_fields(req)
    if get_documents(db, "retailer", {"phone": retailer.phone}, limit=1):
        raise Conflict("Retailer with this phone number already exists")
    document = retailer.model_dump()
    try:
        create_document(db, "retailer", document)
    except DuplicateKeyError:
        raise Conflict("Retailer with this phone number already exists")
    return serialize(document)


@app.put("/api/retailers/{retailer_id}")
def update_retailer(retailer_id: str, req: RetailerRequest, db=Depends(get_db), _: dict = Depends(get_current_user)):
    retailer = _retailer_fields(req)
    existing = _get_retailer(db, retailer_id)
    if existing.get("phone") != retailer.phone:
        if db.retailer.find_one({"phone": retailer.phone, "_id": {"$ne": existing["_id"]}}):
            raise Conflict("Retailer with this phone number already exists")
    try:
        db.retailer.update_one(
            {"_id": existing["_id"]},
            {"$set": retailer.model_dump(), "$currentDate": {"updated_at": True}},
        )
    except DuplicateKeyError:
        raise Conflict("Retailer with this phone number already exists")
    return serialize(db.retailer.find_one({"_id": existing["_id"]}))


@app.delete("/api/retailers/{retailer_id}")
def delete_retailer(retailer_id: str, db=Depends(get_db), _: dict = Depends(get_current_user)):
    res = db.retailer.delete_one({"_id": parse_object_id(retailer_id, "Retailer")})
    if res.deleted_count == 0:
        raise NotFound("Retailer not found")
    return {"message": "Retailer deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
