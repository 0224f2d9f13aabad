"""
Token Microservice API

Token ledger, subscription lifecycle sweeps and settlement of payments.
"""

import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))
from core.config_manager import ConfigManager
from core.internal_service_auth import create_cron_or_internal_dependency, require_internal_service
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from .factory import TokenServiceComponents, create_token_service
from .lifecycle_scheduler import LifecycleScheduler
from .models import (
    AutoRenewRequest,
    BalanceBreakdown,
    BonusGrantRequest,
    BonusGrantResult,
    CreateLedgerRequest,
    CreatePlanRequest,
    HealthCheckResponse,
    LedgerResponse,
    OpenTransactionRequest,
    PlanResponse,
    SettlementRequest,
    SettlementResult,
    SettlementTransaction,
    SpendRequest,
    SpendResult,
    SweepKind,
    SweepReport,
    TokenLedger,
)
from .protocols import (
    ConcurrentModificationError,
    InconsistentSettlementError,
    InsufficientBalanceError,
    LedgerNotFoundError,
    PlanAlreadyExistsError,
    PlanNotFoundError,
    TokenServiceError,
    TopUpNotAllowedError,
    TransactionNotFoundError,
)
from .settlement_handler import SettlementHandler
from .token_service import TokenService

# Initialize configuration manager
config_manager = ConfigManager("token_service")
config = config_manager.get_service_config()
token_config = config_manager.get_token_config()

# Configure logging
logger = setup_service_logger("token_service", config=config.logging)

# Print configuration info (development environment)
if config.debug:
    config_manager.print_config_summary(show_secrets=False)

# Global variables
components: Optional[TokenServiceComponents] = None
event_bus = None  # NATS event bus
SERVICE_PORT = config.service_port or 8231
API_PREFIX = "/api/v1/tokens"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global components, event_bus

    try:
        # Initialize NATS event bus
        if config.infra.nats_enabled:
            try:
                event_bus = await get_event_bus("token_service", config_manager)
                logger.info("✅ Event bus initialized successfully")
            except Exception as e:
                logger.warning(
                    f"⚠️  Failed to initialize event bus: {e}. Continuing without event subscriptions."
                )
                event_bus = None

        # Create token service components using factory (with or without event bus)
        components = create_token_service(config=config_manager, event_bus=event_bus)

        # Initialize repository (schema and tables)
        await components.repository.initialize()

        # Subscribe to events if event bus is available
        if event_bus:
            try:
                from .events import get_event_handlers

                handler_map = get_event_handlers(
                    components.token_service, components.settlement_handler
                )
                for pattern, handler_func in handler_map.items():
                    await event_bus.subscribe_to_events(
                        pattern=pattern,
                        handler=handler_func,
                        durable=f"token-{pattern.replace('.', '-')}-consumer",
                    )
                    logger.info(f"✅ Subscribed to {pattern}")

                logger.info(f"✅ Token event subscriber started ({len(handler_map)} event patterns)")

            except Exception as e:
                logger.warning(f"⚠️  Failed to subscribe to events: {e}")

        # Start the refresh and lifecycle sweeps
        if token_config.scheduler_enabled:
            try:
                components.scheduler.start()
            except Exception as e:
                logger.warning(f"⚠️  Failed to start lifecycle scheduler: {e}")
        else:
            logger.info("Lifecycle scheduler disabled (SCHEDULER_ENABLED=false)")

        logger.info(f"✅ Token service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize token service: {e}")
        raise
    finally:
        if components:
            try:
                await components.scheduler.stop()
            except Exception as e:
                logger.error(f"❌ Failed to stop scheduler: {e}")

            notification_client = components.token_service.notification_client
            if notification_client is not None and hasattr(notification_client, "close"):
                await notification_client.close()

        if event_bus:
            try:
                await event_bus.close()
                logger.info("Token event bus closed")
            except Exception as e:
                logger.error(f"Error closing event bus: {e}")

        if components:
            await components.repository.close()
            logger.info("Token service database connections closed")


# Create FastAPI application
app = FastAPI(
    title="Token Service",
    description="Token ledger, subscription lifecycle and settlement service",
    version="1.0.0",
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_token_service() -> TokenService:
    """Get token service instance"""
    if not components:
        raise HTTPException(status_code=503, detail="Token service not initialized")
    return components.token_service


async def get_settlement_handler() -> SettlementHandler:
    if not components:
        raise HTTPException(status_code=503, detail="Token service not initialized")
    return components.settlement_handler


async def get_lifecycle_scheduler() -> LifecycleScheduler:
    if not components:
        raise HTTPException(status_code=503, detail="Token service not initialized")
    return components.scheduler


require_cron_or_internal = create_cron_or_internal_dependency(lambda: token_config.cron_secret)


def to_http_exception(error: TokenServiceError) -> HTTPException:
    """Map a domain error onto its HTTP status"""
    if isinstance(error, InsufficientBalanceError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": str(error),
                "available": error.available,
                "required": error.required,
                "shortfall": error.shortfall,
            },
        )
    if isinstance(error, (LedgerNotFoundError, PlanNotFoundError, TransactionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (ConcurrentModificationError, PlanAlreadyExistsError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, TopUpNotAllowedError):
        code = (
            status.HTTP_429_TOO_MANY_REQUESTS
            if error.reason == TopUpNotAllowedError.DAILY_LIMIT_REACHED
            else status.HTTP_403_FORBIDDEN
        )
        return HTTPException(status_code=code, detail={"message": str(error), "reason": error.reason})
    if isinstance(error, InconsistentSettlementError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Settlement requires manual reconciliation",
                "transaction_id": error.transaction_id,
            },
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# ====================
# Health Check
# ====================


@app.get(f"{API_PREFIX}/health", response_model=HealthCheckResponse)
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Health check with dependency status"""
    dependencies = {}

    # Check database connection
    try:
        if components and components.repository.db:
            result = await components.repository.db.health_check()
            dependencies["database"] = "healthy" if result and result.get('healthy') else "unhealthy"
        else:
            dependencies["database"] = "unhealthy"
    except Exception:
        dependencies["database"] = "unhealthy"

    # Check event bus
    if event_bus is not None:
        dependencies["event_bus"] = "healthy" if event_bus.is_connected else "unhealthy"
    else:
        dependencies["event_bus"] = "not_configured"

    # Check scheduler
    dependencies["scheduler"] = (
        "healthy" if components and components.scheduler.running else "not_configured"
    )

    overall = "healthy" if all(v in ("healthy", "not_configured") for v in dependencies.values()) else "degraded"

    return HealthCheckResponse(
        status=overall,
        service="token_service",
        port=SERVICE_PORT,
        version="1.0.0",
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )


# ====================
# Ledgers
# ====================


@app.post(f"{API_PREFIX}/ledgers", response_model=LedgerResponse)
async def create_ledger(
    request: CreateLedgerRequest,
    service: TokenService = Depends(get_token_service)
):
    """Create a zero ledger at registration (idempotent)"""
    try:
        ledger, created = await service.create_ledger(request.user_id)
        return LedgerResponse(user_id=ledger.user_id, created=created, ledger=ledger)
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating ledger: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get(f"{API_PREFIX}/ledgers/{{user_id}}/balance", response_model=BalanceBreakdown)
async def get_balance(
    user_id: str,
    service: TokenService = Depends(get_token_service)
):
    """Balance breakdown; expired bonus is reconciled first"""
    try:
        return await service.get_balance(user_id)
    except TokenServiceError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error getting balance for {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.put(f"{API_PREFIX}/ledgers/{{user_id}}/auto-renew")
async def set_auto_renew(
    user_id: str,
    request: AutoRenewRequest,
    service: TokenService = Depends(get_token_service)
):
    """Turn automatic renewal on or off"""
    try:
        ledger = await service.set_auto_renew(user_id, request.enabled)
        return {"user_id": ledger.user_id, "auto_renew": ledger.window.auto_renew}
    except TokenServiceError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error setting auto-renew for {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.delete(f"{API_PREFIX}/ledgers/{{user_id}}")
async def delete_ledger(
    user_id: str,
    caller: str = Depends(require_internal_service),
    service: TokenService = Depends(get_token_service)
):
    """Delete a ledger together with its user"""
    try:
        deleted = await service.delete_ledger(user_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"No token ledger for user {user_id}")
        return {"user_id": user_id, "deleted": True}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting ledger for {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Spend and Bonus
# ====================


@app.post(f"{API_PREFIX}/spend", response_model=SpendResult)
async def spend_tokens(
    request: SpendRequest,
    service: TokenService = Depends(get_token_service)
):
    """Spend tokens (daily quota first, then bonus)"""
    try:
        return await service.spend(request.user_id, request.amount)
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error spending tokens: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post(f"{API_PREFIX}/bonus", response_model=BonusGrantResult)
async def grant_bonus(
    request: BonusGrantRequest,
    caller: str = Depends(require_internal_service),
    service: TokenService = Depends(get_token_service)
):
    """Admin bonus grant; rejected while a bonus is live"""
    try:
        return await service.grant_bonus(
            user_id=request.user_id,
            amount=request.amount,
            granted_by=request.granted_by,
            reason=request.reason,
        )
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error granting bonus: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Plans
# ====================


@app.post(f"{API_PREFIX}/plans", response_model=PlanResponse)
async def create_plan(
    request: CreatePlanRequest,
    caller: str = Depends(require_internal_service),
    service: TokenService = Depends(get_token_service)
):
    """Create a subscription plan"""
    try:
        plan = await service.create_plan(
            name=request.name,
            price=request.price,
            duration_days=request.duration_days,
            daily_rate=request.daily_rate,
            plan_id=request.plan_id,
        )
        return PlanResponse.from_plan(plan)
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating plan: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get(f"{API_PREFIX}/plans/{{plan_id}}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    service: TokenService = Depends(get_token_service)
):
    try:
        return PlanResponse.from_plan(await service.get_plan(plan_id))
    except TokenServiceError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error getting plan {plan_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Settlement
# ====================


@app.post(f"{API_PREFIX}/transactions", response_model=SettlementTransaction)
async def open_transaction(
    request: OpenTransactionRequest,
    service: TokenService = Depends(get_token_service)
):
    """Open a pending transaction for a plan purchase or token top-up"""
    try:
        return await service.open_transaction(
            user_id=request.user_id,
            subject_type=request.subject_type,
            subject_ref=request.subject_ref,
            amount=request.amount,
            tokens=request.tokens,
        )
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error opening transaction: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post(f"{API_PREFIX}/settlements", response_model=SettlementResult)
async def apply_settlement(
    request: SettlementRequest,
    caller: str = Depends(require_internal_service),
    handler: SettlementHandler = Depends(get_settlement_handler)
):
    """Settlement notification from the payment side; replays are no-ops"""
    try:
        return await handler.apply_settlement(
            request.transaction_id,
            request.outcome,
            request.model_dump(exclude_none=True),
        )
    except TokenServiceError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error applying settlement {request.transaction_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Admin
# ====================


@app.post(f"{API_PREFIX}/admin/ledgers/{{user_id}}/renew", response_model=TokenLedger)
async def renew_now(
    user_id: str,
    caller: str = Depends(require_internal_service),
    service: TokenService = Depends(get_token_service)
):
    """Renew a user's current plan immediately"""
    try:
        return await service.renew_now(user_id)
    except TokenServiceError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error renewing {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


async def _run_sweep(scheduler: LifecycleScheduler, kind: SweepKind, run_id: str) -> None:
    try:
        if kind == SweepKind.REFRESH:
            await scheduler.run_refresh_sweep(run_id)
        else:
            await scheduler.run_lifecycle_sweep(run_id)
    except Exception as e:
        logger.error(f"❌ On-demand {kind.value} sweep aborted: {e}", exc_info=True)


@app.post(f"{API_PREFIX}/admin/sweeps/refresh", status_code=202)
async def trigger_refresh_sweep(
    background_tasks: BackgroundTasks,
    caller: str = Depends(require_cron_or_internal),
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler)
):
    """Queue the refresh / renewal sweep"""
    run_id = uuid.uuid4().hex
    background_tasks.add_task(_run_sweep, scheduler, SweepKind.REFRESH, run_id)
    logger.info(f"Refresh sweep {run_id} queued by {caller}")
    return {"accepted": True, "sweep": SweepKind.REFRESH.value, "run_id": run_id}


@app.post(f"{API_PREFIX}/admin/sweeps/lifecycle", status_code=202)
async def trigger_lifecycle_sweep(
    background_tasks: BackgroundTasks,
    caller: str = Depends(require_cron_or_internal),
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler)
):
    """Queue the lifecycle sweep"""
    run_id = uuid.uuid4().hex
    background_tasks.add_task(_run_sweep, scheduler, SweepKind.LIFECYCLE, run_id)
    logger.info(f"Lifecycle sweep {run_id} queued by {caller}")
    return {"accepted": True, "sweep": SweepKind.LIFECYCLE.value, "run_id": run_id}


@app.get(f"{API_PREFIX}/admin/sweeps/{{kind}}", response_model=SweepReport)
async def get_last_sweep_report(
    kind: SweepKind,
    run_id: Optional[str] = Query(None, description="Run id returned by the trigger"),
    caller: str = Depends(require_cron_or_internal),
    scheduler: LifecycleScheduler = Depends(get_lifecycle_scheduler)
):
    """Per-user outcomes of the most recent finished sweep of this kind"""
    report = scheduler.last_reports.get(kind)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No {kind.value} sweep has finished yet")
    if run_id and report.run_id != run_id:
        raise HTTPException(status_code=404, detail=f"{kind.value.capitalize()} sweep {run_id} has not finished")
    return report


# ====================
# Error Handling
# ====================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception in {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error occurred"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.token_service.main:app",
        host=config.service_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )
