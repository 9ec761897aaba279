"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select

from storefront.cache import route_cache_key
from storefront.config import Settings
from storefront.job_queue import QueueUnavailable

from .checkout import CheckoutAccepted, CheckoutRequest
from .errors import (
    EntityNotFound,
    GatewayError,
    InsufficientStock,
    PaymentNotCancellable,
    SignatureMismatch,
)
from .models import Payment, PaymentType, Product
from .runtime import PaymentRuntime

# Settings
settings = Settings(service_name="payment-service", service_port=8003)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Response models
class JobStatusResponse(BaseModel):
    """Payment job status."""
    job_id: str
    status: str
    progress: int
    attempts_made: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class PaymentItemResponse(BaseModel):
    product_id: str
    quantity: int
    price: float


class PaymentResponse(BaseModel):
    """Payment as seen by its owner."""
    order_id: str
    status: str
    payment_type: str
    payment_method: str
    amount: float
    shipping_cost: float
    admin_fee: float
    total_amount: float
    items: List[PaymentItemResponse]
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None
    va_number: Optional[str] = None
    bank_type: Optional[str] = None
    payment_code: Optional[str] = None
    redirect_url: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    expiry_time: Optional[datetime] = None
    created_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            order_id=payment.order_id,
            status=payment.status,
            payment_type=payment.payment_type,
            payment_method=payment.payment_method,
            amount=payment.amount,
            shipping_cost=payment.shipping_cost,
            admin_fee=payment.admin_fee,
            total_amount=payment.total_amount,
            items=[
                PaymentItemResponse(product_id=item.product_id, quantity=item.quantity, price=item.price)
                for item in payment.items
            ],
            transaction_id=payment.gateway_transaction_id,
            transaction_status=payment.transaction_status,
            va_number=payment.va_number,
            bank_type=payment.bank_type,
            payment_code=payment.payment_code,
            redirect_url=payment.redirect_url,
            actions=payment.gateway_actions,
            expiry_time=payment.expiry_time,
            created_at=payment.created_at,
            paid_at=payment.paid_at,
        )


class ProductAvailability(BaseModel):
    id: str
    name: str
    price: float
    stock: int
    reserved_stock: int
    available_stock: int

    @classmethod
    def from_product(cls, product: Product) -> "ProductAvailability":
        return cls(
            id=product.id,
            name=product.name,
            price=product.price,
            stock=product.stock,
            reserved_stock=product.reserved_stock,
            available_stock=product.available_stock,
        )


# Dependencies
def get_runtime(request: Request) -> PaymentRuntime:
    return request.app.state.runtime


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, set by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def create_app(runtime: Optional[PaymentRuntime] = None) -> FastAPI:
    """Build the application; tests pass a runtime wired to in-memory collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        logger.info("Starting Payment Service...")
        app.state.runtime = runtime or PaymentRuntime(settings)
        await app.state.runtime.start()
        logger.info("Payment Service started successfully")

        yield

        logger.info("Shutting down Payment Service...")
        await app.state.runtime.stop()

    app = FastAPI(title="Payment Service", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    register_exception_handlers(app)
    app.include_router(build_router())
    return app


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(InsufficientStock)
    async def insufficient_stock(request: Request, exc: InsufficientStock):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "product_id": exc.product_id, "available": exc.available},
        )

    @app.exception_handler(EntityNotFound)
    async def entity_not_found(request: Request, exc: EntityNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PaymentNotCancellable)
    async def not_cancellable(request: Request, exc: PaymentNotCancellable):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(SignatureMismatch)
    async def signature_mismatch(request: Request, exc: SignatureMismatch):
        return JSONResponse(status_code=400, content={"detail": "Invalid signature"})

    @app.exception_handler(QueueUnavailable)
    async def queue_unavailable(request: Request, exc: QueueUnavailable):
        logger.error(f"Rejecting request, queue unavailable: {str(exc)}")
        return JSONResponse(status_code=503, content={"detail": "Payment queue unavailable, try again later"})

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        logger.error(f"Gateway error: {str(exc)}")
        return JSONResponse(status_code=502, content={"detail": f"Payment gateway error ({exc.gateway})"})


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health_check(runtime: PaymentRuntime = Depends(get_runtime)):
        """Health check endpoint."""
        database_ok = await runtime.database.ping()
        return {
            "status": "healthy" if database_ok else "degraded",
            "service": "payment-service",
            "database": "ok" if database_ok else "unavailable",
            "cache": "ok" if runtime.cache.available else "disabled",
        }

    @router.post("/payments/checkout", response_model=CheckoutAccepted, status_code=202)
    async def checkout(
        request: CheckoutRequest,
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        """Hold stock and queue payment creation; poll the job for the outcome."""
        return await runtime.checkout.submit(user_id, request)

    @router.get("/payments/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job_status(
        job_id: str,
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        status = await runtime.queue.get_status(job_id)
        # Other users' jobs are indistinguishable from missing ones
        if status is None or status.payload.get("user_id") != user_id:
            raise HTTPException(status_code=404, detail="Job not found")

        return JobStatusResponse(
            job_id=status.job_id,
            status=status.state.value,
            progress=status.progress,
            attempts_made=status.attempts_made,
            result=status.result,
            error=status.failure_reason,
        )

    @router.get("/payments/pending", response_model=Optional[PaymentResponse])
    async def get_pending_payment(
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        """The caller's most recent PENDING payment, if any."""
        payment = await runtime.reconciler.latest_pending(user_id)
        return PaymentResponse.from_payment(payment) if payment else None

    @router.get("/payments", response_model=List[PaymentResponse])
    async def list_payments(
        limit: int = Query(default=20, ge=1, le=100),
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        async with runtime.database.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.user_id == user_id)
                .order_by(Payment.created_at.desc())
                .limit(limit)
            )
            return [PaymentResponse.from_payment(payment) for payment in result.scalars()]

    @router.get("/payments/{order_id}/status", response_model=PaymentResponse)
    async def get_payment_status(
        order_id: str,
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        """Reconcile with the gateway and return the payment."""
        payment = await runtime.reconciler.refresh_from_gateway(order_id, user_id)
        return PaymentResponse.from_payment(payment)

    @router.post("/payments/{order_id}/cancel", response_model=PaymentResponse)
    async def cancel_payment(
        order_id: str,
        user_id: str = Depends(get_user_id),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        payment = await runtime.reconciler.cancel(order_id, user_id)
        return PaymentResponse.from_payment(payment)

    @router.post("/payments/midtrans/notification")
    async def midtrans_notification(request: Request, runtime: PaymentRuntime = Depends(get_runtime)):
        """Midtrans HTTP notification."""
        body = await _read_body(request)
        status = await runtime.reconciler.handle_notification(PaymentType.MIDTRANS, body)
        return {"success": True, "status": status.value}

    @router.post("/payments/plisio/callback")
    @router.post("/payments/plisio/success")
    @router.post("/payments/plisio/fail")
    async def plisio_callback(request: Request, runtime: PaymentRuntime = Depends(get_runtime)):
        """Plisio invoice callbacks (sent with ``?json=true``); all three carry the same signed body."""
        body = await _read_body(request)
        status = await runtime.reconciler.handle_notification(PaymentType.PLISIO, body)
        return {"success": True, "status": status.value}

    @router.get("/products", response_model=List[ProductAvailability])
    async def list_products(
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        runtime: PaymentRuntime = Depends(get_runtime),
    ):
        async def load():
            async with runtime.database.session_factory() as session:
                result = await session.execute(
                    select(Product).order_by(Product.created_at.desc(), Product.id).limit(limit).offset(offset)
                )
                return [ProductAvailability.from_product(p).model_dump() for p in result.scalars()]

        return await runtime.cache.get_or_set(f"products:list:{limit}:{offset}", load)

    @router.get("/products/{product_id}", response_model=ProductAvailability)
    async def get_product(product_id: str, request: Request, runtime: PaymentRuntime = Depends(get_runtime)):
        key = route_cache_key(request.url.path, request.url.query)
        return await runtime.cache.get_or_set(key, lambda: _load_product(runtime, product_id))

    @router.get("/products/{product_id}/checkout", response_model=ProductAvailability)
    async def get_checkout_product(product_id: str, runtime: PaymentRuntime = Depends(get_runtime)):
        """Availability shown on the checkout page."""
        return await runtime.cache.get_or_set(
            f"product:checkout:{product_id}", lambda: _load_product(runtime, product_id)
        )

    @router.get("/queue/stats")
    async def queue_stats(runtime: PaymentRuntime = Depends(get_runtime)):
        return {"queue": runtime.queue.name, "counts": await runtime.queue.counts()}

    return router


async def _load_product(runtime: PaymentRuntime, product_id: str) -> Dict[str, Any]:
    async with runtime.database.session_factory() as session:
        product = await session.get(Product, product_id)
    if product is None:
        raise EntityNotFound("Product", product_id)
    return ProductAvailability.from_product(product).model_dump()


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Malformed notification body") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Malformed notification body")
    return body


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
