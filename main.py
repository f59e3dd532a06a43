from fastapi import FastAPI, HTTPException, Query, Request, Depends, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List, Optional
import logging
import math
import structlog
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from errors import BankingError, InfrastructureError
from models import (
    AccountNotFound,
    AccountResponse,
    BalanceResponse,
    ChangePasswordRequest,
    CreateAccountRequest,
    CreateUserRequest,
    DepositRequest,
    ErrorResponse,
    HealthResponse,
    IdResponse,
    InsufficientFunds,
    LoginLocked,
    LoginRequest,
    LoginResponse,
    LoginSucceeded,
    PaymentRequest,
    TransferRequest,
    TransferResponse,
    UpdateUserRequest,
    User,
    UserListResponse,
    UserResponse,
)
from repositories import get_account_repository, get_login_attempt_repository, get_user_repository
from security import get_current_user
from services import (
    AccountService,
    AuthenticationService,
    LedgerService,
    UserService,
    get_account_service,
    get_authentication_service,
    get_ledger_service,
    get_user_service,
)


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings())

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def login_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings = get_settings()
    logger.info("Starting M-Banking API", version=settings.app_version)
    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        user_service = get_user_service(get_user_repository())
        await user_service.ensure_user(
            settings.bootstrap_admin_name,
            settings.bootstrap_admin_email.lower(),
            settings.bootstrap_admin_password,
        )
        logger.info("Bootstrap operator ready", email=settings.bootstrap_admin_email)
    yield
    # Shutdown
    logger.info("Shutting down M-Banking API")


# Create FastAPI app
app = FastAPI(
    title=get_settings().app_name,
    description="Authentication with login throttling and a same-bank balance ledger",
    version=get_settings().app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=get_settings().allowed_methods,
    allow_headers=get_settings().allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_auth_service(
    user_repo=Depends(get_user_repository),
    attempt_repo=Depends(get_login_attempt_repository)
) -> AuthenticationService:
    return get_authentication_service(user_repo, attempt_repo)


def get_ledger(account_repo=Depends(get_account_repository)) -> LedgerService:
    return get_ledger_service(account_repo)


def get_accounts(account_repo=Depends(get_account_repository)) -> AccountService:
    return get_account_service(account_repo)


def get_users(user_repo=Depends(get_user_repository)) -> UserService:
    return get_user_service(user_repo)


def insufficient_funds(result: InsufficientFunds) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"No enough money for payment. Your Balance: ${result.balance}"
    )


def account_not_found(result: AccountNotFound) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Account {result.account_number} not found"
    )


def to_account_response(account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        account_number=account.account_number,
        name=account.name,
        email=account.email,
        phone=account.phone,
        balance=account.balance,
    )


def to_user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, email=user.email, name=user.name)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get system statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    user_repo=Depends(get_user_repository)
):
    try:
        accounts_count = await account_repo.get_accounts_count()
        users_count = await user_repo.get_users_count()
    except InfrastructureError as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=503,
            detail="Health check failed"
        )

    return HealthResponse(
        status="healthy",
        accounts_count=accounts_count,
        users_count=users_count
    )

# Authentication
@app.post(
    "/auth/login",
    response_model=LoginResponse,
    summary="Login",
    description="Authenticate an operator, subject to failed-attempt throttling",
    responses={
        401: {"description": "Wrong credentials, attempts remaining reported"},
        403: {"description": "Too many failed attempts, locked out"},
        429: {"description": "Rate limit exceeded"}
    }
)
@limiter.limit(login_rate_limit)
async def login(
    request: Request,
    login_request: LoginRequest,
    service: AuthenticationService = Depends(get_auth_service)
):
    result = await service.login(login_request.email, login_request.password)

    if isinstance(result, LoginSucceeded):
        return LoginResponse(
            email=result.email,
            name=result.name,
            user_id=result.user_id,
            token=result.token
        )

    if isinstance(result, LoginLocked):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Too many failed login attempts. Time remaining: "
            f"{math.floor(result.minutes_remaining)} minutes"
        )

    detail = f"Wrong email or password. Attempts remaining: {result.attempts_remaining}"
    if result.attempts_remaining == 0:
        detail += ". Limit reached."
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)

# Operators
@app.get(
    "/users",
    response_model=UserListResponse,
    summary="List operators",
    description="Page through operators, optionally filtered with search=field:value "
    "and ordered with sort=field:asc|desc (default email ascending)"
)
async def list_users(
    page_number: int = Query(1, ge=1),
    page_size: int = Query(0, ge=0),
    search: Optional[str] = Query(None, pattern=r"^\s*(id|name|email)\s*:.*$"),
    sort: Optional[str] = Query(None, pattern=r"^\s*(id|name|email)\s*:\s*(asc|desc)?\s*$"),
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    page = await service.list_users(page_number, page_size, search, sort)
    return UserListResponse(
        page_number=page_number,
        page_size=page_size,
        count=page.count,
        total_pages=page.total_pages,
        has_previous_page=page.has_previous_page,
        has_next_page=page.has_next_page,
        data=[to_user_response(user) for user in page.users]
    )


@app.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create operator"
)
async def create_user(
    user_request: CreateUserRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    user = await service.create_user(
        user_request.name,
        user_request.email,
        user_request.password,
        user_request.password_confirm
    )
    return to_user_response(user)


@app.get("/users/{user_id}", response_model=UserResponse, summary="Get operator")
async def get_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    return to_user_response(await service.get_user(user_id))


@app.put("/users/{user_id}", response_model=UserResponse, summary="Update operator")
async def update_user(
    user_id: str,
    user_request: UpdateUserRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    return to_user_response(
        await service.update_user(user_id, user_request.name, user_request.email)
    )


@app.post(
    "/users/{user_id}/change-password",
    response_model=IdResponse,
    summary="Change operator password"
)
async def change_user_password(
    user_id: str,
    password_request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    await service.change_password(
        user_id,
        password_request.password_old,
        password_request.password_new,
        password_request.password_confirm
    )
    return IdResponse(id=user_id)


@app.delete("/users/{user_id}", response_model=IdResponse, summary="Delete operator")
async def delete_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_users)
):
    await service.delete_user(user_id)
    return IdResponse(id=user_id)

# Bank accounts
@app.get("/bank", response_model=List[AccountResponse], summary="List accounts")
async def list_accounts(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_accounts)
):
    return [to_account_response(account) for account in await service.list_accounts()]


@app.post(
    "/bank",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open account",
    description="Open an account with a freshly generated 10-digit account number"
)
async def create_account(
    account_request: CreateAccountRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_accounts)
):
    account = await service.create_account(
        account_request.name,
        account_request.email,
        account_request.phone,
        account_request.initial_balance,
        account_request.password,
        account_request.password_confirm
    )
    return to_account_response(account)


@app.get("/bank/get-balance", response_model=BalanceResponse, summary="Get balance")
async def get_balance(
    account_number: str = Query(..., pattern=r"^[0-9]{10}$"),
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    balance = await ledger.get_balance(account_number)
    if balance is None:
        raise account_not_found(AccountNotFound(account_number=account_number))
    return BalanceResponse(account_number=account_number, balance=balance)


@app.put("/bank/deposit", response_model=BalanceResponse, summary="Deposit")
async def deposit(
    deposit_request: DepositRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    result = await ledger.modify_balance(deposit_request.account_number, deposit_request.deposit)
    if isinstance(result, AccountNotFound):
        raise account_not_found(result)
    return BalanceResponse(account_number=result.account_number, balance=result.balance)


@app.put(
    "/bank/pay",
    response_model=BalanceResponse,
    summary="Pay",
    responses={400: {"description": "Insufficient funds"}}
)
async def pay(
    payment_request: PaymentRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    result = await ledger.modify_balance(payment_request.account_number, -payment_request.pay)
    if isinstance(result, AccountNotFound):
        raise account_not_found(result)
    if isinstance(result, InsufficientFunds):
        raise insufficient_funds(result)
    return BalanceResponse(account_number=result.account_number, balance=result.balance)


@app.put(
    "/bank/transfer",
    response_model=TransferResponse,
    summary="Transfer to same bank",
    responses={400: {"description": "Insufficient funds"}, 404: {"description": "Account not found"}}
)
async def transfer(
    transfer_request: TransferRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    result = await ledger.transfer_same_ledger(
        transfer_request.source_account,
        transfer_request.target_account,
        transfer_request.amount
    )
    if isinstance(result, AccountNotFound):
        raise account_not_found(result)
    if isinstance(result, InsufficientFunds):
        raise insufficient_funds(result)
    return TransferResponse(
        source_account=result.source_account,
        target_account=result.target_account,
        amount=result.amount,
        balance=result.source_balance
    )


@app.get("/bank/{account_id}", response_model=AccountResponse, summary="Get account")
async def get_account(
    account_id: str,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_accounts)
):
    return to_account_response(await service.get_account(account_id))


@app.delete("/bank/{account_id}", response_model=IdResponse, summary="Close account")
async def delete_account(
    account_id: str,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_accounts)
):
    await service.delete_account(account_id)
    return IdResponse(id=account_id)


@app.post(
    "/bank/{account_id}/change-password",
    response_model=IdResponse,
    summary="Change account password"
)
async def change_password(
    account_id: str,
    password_request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_accounts)
):
    await service.change_password(
        account_id,
        password_request.password_old,
        password_request.password_new,
        password_request.password_confirm
    )
    return IdResponse(id=account_id)

# Global exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json"),
        headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            detail=detail,
            error_code="VALIDATION_ERROR"
        ).model_dump(mode="json")
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(
        "Rate limit exceeded",
        limit=exc.detail,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )
    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=ErrorResponse(
            detail=f"Rate limit exceeded: {exc.detail}",
            error_code="RATE_LIMITED"
        ).model_dump(mode="json")
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)


@app.exception_handler(BankingError)
async def banking_exception_handler(request: Request, exc: BankingError):
    log = logger.error if isinstance(exc, InfrastructureError) else logger.warning
    log(
        "Request failed",
        error=exc.detail,
        error_code=exc.error_code,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.error_code
        ).model_dump(mode="json")
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": "M-Banking API", "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
