from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from paywall.core.config import Settings, settings as default_settings
from paywall.core.firebase import init_firebase
from paywall.core.database import create_db_engine, create_session_factory, init_db
from paywall.core.locks import SubscriptionLockManager
from paywall.core.rate_limit_middleware import RateLimitMiddleware
from paywall.core.redis_cache import RedisCache
from paywall.models.payment import Network
from paywall.services.payment_service import PaymentVerificationService
from paywall.services.subscription_manager import SubscriptionManager
from paywall.services.sweep_scheduler import SubscriptionSweepScheduler
from paywall.verifiers.dispatcher import VerificationDispatcher, build_verifiers
from paywall.api.v1.router import api_router
import httpx
import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Read version from VERSION file, fallback to default if not found."""
    version_file = os.path.join(os.path.dirname(os.path.dirname(__file__)), "VERSION")
    try:
        if os.path.exists(version_file):
            with open(version_file, "r") as f:
                version = f.read().strip()
                if version:
                    return version
    except Exception as e:
        logger.warning(f"Could not read VERSION file: {e}")
    return "1.0.0"


def deposit_addresses(settings: Settings) -> dict:
    return {
        Network.TRC20: settings.usdt_trc20_address,
        Network.ERC20: settings.usdt_erc20_address,
        Network.BEP20: settings.usdt_bep20_address,
    }


def create_app(settings: Settings = default_settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("lifespan: Entry - starting services")
        init_firebase(settings)

        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

        cache = RedisCache(settings.redis_url, password=settings.redis_password, db=settings.redis_db)
        lock_manager = SubscriptionLockManager(cache, timeout_seconds=settings.subscription_lock_timeout_seconds)
        http_client = httpx.AsyncClient(
            timeout=settings.explorer_timeout_seconds,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

        manager = SubscriptionManager.from_settings(settings, session_factory, lock_manager)
        dispatcher = VerificationDispatcher(build_verifiers(settings, http_client, cache))
        payment_service = PaymentVerificationService(
            dispatcher,
            manager,
            deposit_addresses(settings),
            subscription_price=settings.subscription_price_usdt,
        )
        scheduler = SubscriptionSweepScheduler(manager, interval_seconds=settings.sweep_interval_minutes * 60)

        app.state.cache = cache
        app.state.subscription_manager = manager
        app.state.payment_service = payment_service
        app.state.sweep_scheduler = scheduler

        if settings.sweep_enabled:
            scheduler.start()
        logger.info("lifespan: Success - services started")

        try:
            yield
        finally:
            await scheduler.stop()
            await http_client.aclose()
            engine.dispose()
            logger.info("lifespan: Services stopped")

    app = FastAPI(
        title="Paywall API",
        version=get_version(),
        debug=settings.debug,
        redirect_slashes=False,
        lifespan=lifespan,
    )

    # Add CORS middleware (must be first, before rate limiting)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add rate limiting middleware (applies to all requests)
    app.add_middleware(RateLimitMiddleware)

    # Include routers
    app.include_router(api_router, prefix=settings.api_v1_str)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
