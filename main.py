from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from core.config import logger, ALLOWED_ORIGINS, RUN_ORDER_TIMERS  # type: ignore
from core.errors import BlindBoxError
from jobs.order_timers import order_timers

# Routers
from routers import orders, pay, blindbox, coupons, coupon_admin  # type: ignore

app = FastAPI(title="Blind Box Store")

# ---- CORS setup ----
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BlindBoxError)
async def _blindbox_error_handler(request: Request, exc: BlindBoxError):
    if exc.status_code >= 500:
        logger.error(f"[api] {request.method} {request.url.path} -> {exc.code}: {exc}")
    else:
        logger.info(f"[api] {request.method} {request.url.path} -> {exc.code}: {exc}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


app.include_router(orders.router)
app.include_router(pay.router)
app.include_router(blindbox.router)
app.include_router(coupons.router)
app.include_router(coupon_admin.router)


@app.on_event("startup")
async def _init_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.on_event("startup")
async def _start_order_timers():
    if RUN_ORDER_TIMERS:
        order_timers.start()


@app.on_event("shutdown")
async def _stop_order_timers():
    order_timers.shutdown()


@app.get("/api/health")
async def health():
    return {"ok": True}
