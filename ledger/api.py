import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import ValidationError

from accrual import AccrualClient, PollerConfig, ReconciliationPoller

from .auth import InvalidTokenError, TokenSigner
from .models import (
    BalanceResponse,
    CreateOrderResult,
    CredentialsRequest,
    OrderResponse,
    WithdrawalResponse,
    WithdrawRequest,
    luhn_valid,
)
from .postgres import PostgresStorage
from .service import (
    InsufficientFundsError,
    InvalidCredentialsError,
    LedgerService,
    OrderConflictError,
    StorageError,
    UserAlreadyExistsError,
    WithdrawalExistsError,
)
from .settings import Settings
from .storage import InMemoryStorage, LedgerStorage


bearer_scheme = HTTPBearer(auto_error=False)


def get_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        return request.app.state.token_signer.verify(credentials.credentials)
    except InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))


async def open_storage(settings: Settings) -> LedgerStorage:
    if settings.database_uri:
        return await PostgresStorage.connect(settings.database_uri)
    logger.warning("DATABASE_URI not set, using in-memory storage")
    return InMemoryStorage()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = await open_storage(settings)
        app.state.ledger_service = LedgerService(storage)

        client = None
        poller = None
        if settings.accrual_system_address:
            client = AccrualClient(settings.accrual_system_address, timeout=settings.accrual_timeout)
            poller = ReconciliationPoller(
                storage,
                client,
                PollerConfig(
                    timeout=settings.accrual_timeout,
                    workers=settings.accrual_workers,
                    tick_skew=settings.accrual_tick_skew,
                ),
            )
            poller.start()
        else:
            logger.warning("ACCRUAL_SYSTEM_ADDRESS not set, reconciliation disabled")
        app.state.poller = poller

        try:
            yield
        finally:
            if poller is not None:
                await poller.stop()
            if client is not None:
                await client.aclose()
            await storage.close()

    app = FastAPI(
        title="Loyalty Ledger API",
        description="Loyalty points ledger: order intake, accrual reconciliation, balance and withdrawals",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Authorization"],
    )

    secret = settings.auth_secret
    if not secret:
        logger.warning("AUTH_SECRET not set, tokens will not survive a restart")
        secret = secrets.token_hex(32)
    app.state.token_signer = TokenSigner(secret, settings.token_ttl)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal storage error"},
        )

    @app.get("/health", tags=["System"])
    def health_check(request: Request):
        poller = getattr(request.app.state, "poller", None)
        return {
            "status": "healthy",
            "service": "loyalty-ledger",
            "poller": poller.state.value if poller else "disabled",
        }

    @app.post("/api/user/register", tags=["Users"])
    async def register(request: Request, service: LedgerService = Depends(get_service)) -> Response:
        credentials = await _read_credentials(request)
        try:
            user = await service.register(credentials.login, credentials.password)
        except UserAlreadyExistsError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return _authorized(request, user.id)

    @app.post("/api/user/login", tags=["Users"])
    async def login(request: Request, service: LedgerService = Depends(get_service)) -> Response:
        credentials = await _read_credentials(request)
        try:
            user = await service.authenticate(credentials.login, credentials.password)
        except InvalidCredentialsError as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
        return _authorized(request, user.id)

    @app.post("/api/user/orders", tags=["Orders"])
    async def upload_order(
        request: Request,
        user_id: int = Depends(get_current_user_id),
        service: LedgerService = Depends(get_service),
    ) -> Response:
        number = (await request.body()).decode("utf-8", errors="replace").strip()
        if not number or not number.isdigit():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order number must be digits")
        if not luhn_valid(number):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid order number")
        try:
            result = await service.create_order(number, user_id)
        except OrderConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        if result == CreateOrderResult.ALREADY_OWNED:
            return Response(status_code=status.HTTP_200_OK)
        return Response(status_code=status.HTTP_202_ACCEPTED)

    @app.get(
        "/api/user/orders",
        response_model=list[OrderResponse],
        response_model_exclude_none=True,
        tags=["Orders"],
    )
    async def list_orders(
        user_id: int = Depends(get_current_user_id),
        service: LedgerService = Depends(get_service),
    ):
        orders = await service.get_orders(user_id)
        if not orders:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return [OrderResponse.from_order(o) for o in orders]

    @app.get("/api/user/balance", response_model=BalanceResponse, tags=["Balance"])
    async def get_balance(
        user_id: int = Depends(get_current_user_id),
        service: LedgerService = Depends(get_service),
    ) -> BalanceResponse:
        return BalanceResponse.from_balance(await service.get_balance(user_id))

    @app.post("/api/user/balance/withdraw", tags=["Balance"])
    async def withdraw(
        payload: WithdrawRequest,
        user_id: int = Depends(get_current_user_id),
        service: LedgerService = Depends(get_service),
    ) -> Response:
        try:
            await service.withdraw(user_id, payload.order, payload.sum)
        except InsufficientFundsError as e:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
        except WithdrawalExistsError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/api/user/withdrawals", response_model=list[WithdrawalResponse], tags=["Balance"])
    async def list_withdrawals(
        user_id: int = Depends(get_current_user_id),
        service: LedgerService = Depends(get_service),
    ):
        withdrawals = await service.get_withdrawals(user_id)
        if not withdrawals:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return [WithdrawalResponse.from_withdrawal(w) for w in withdrawals]

    return app


async def _read_credentials(request: Request) -> CredentialsRequest:
    try:
        return CredentialsRequest.model_validate_json(await request.body())
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Login and password are required")


def _authorized(request: Request, user_id: int) -> Response:
    token = request.app.state.token_signer.issue(user_id)
    return Response(status_code=status.HTTP_200_OK, headers={"Authorization": f"Bearer {token}"})


app = create_app()
