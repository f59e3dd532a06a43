from pydantic import BaseModel, Field, PlainSerializer, field_validator, model_validator
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Union
from datetime import datetime
from decimal import Decimal
import re


EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
ACCOUNT_NUMBER_PATTERN = re.compile(r'^[0-9]{10}$')

# Balances travel as JSON numbers
Money = Annotated[Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")]


def validate_email(v: str) -> str:
    if not EMAIL_PATTERN.match(v):
        raise ValueError('Email must be a valid address')
    return v.lower()


def validate_password_strength(v: str) -> str:
    if re.search(r'\s', v):
        raise ValueError('Password must not contain whitespace')
    if not re.search(r'[a-z]', v):
        raise ValueError('Password must contain a lowercase letter')
    if not re.search(r'[A-Z]', v):
        raise ValueError('Password must contain an uppercase letter')
    if not re.search(r'[0-9]', v):
        raise ValueError('Password must contain a digit')
    if not re.search(r'[^A-Za-z0-9]', v):
        raise ValueError('Password must contain a special character')
    if not v.isascii():
        raise ValueError('Password must only contain latin characters')
    return v


def validate_account_number(v: str) -> str:
    if not ACCOUNT_NUMBER_PATTERN.match(v):
        raise ValueError('Account number must be exactly 10 digits')
    return v


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class LoginAttemptRecord(BaseModel):
    id: str
    email: str
    last_login_at: datetime
    attempts: int = Field(0, ge=0)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "LoginAttemptRecord":
        return cls(**document)


class Account(BaseModel):
    id: str
    account_number: str
    name: str
    email: str
    phone: str
    balance: Decimal
    password_hash: str

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Account":
        return cls(**document)


class User(BaseModel):
    id: str
    email: str
    name: str
    password_hash: str

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "User":
        return cls(**document)


# ---------------------------------------------------------------------------
# Service outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoginAllowed:
    pass


@dataclass(frozen=True)
class LoginDenied:
    attempts_remaining: int


@dataclass(frozen=True)
class LoginLocked:
    minutes_remaining: float


@dataclass(frozen=True)
class LoginSucceeded:
    email: str
    name: str
    user_id: str
    token: str


@dataclass(frozen=True)
class BalanceUpdated:
    account_number: str
    balance: Decimal


@dataclass(frozen=True)
class TransferCompleted:
    source_account: str
    target_account: str
    amount: Decimal
    source_balance: Decimal
    target_balance: Decimal


@dataclass(frozen=True)
class InsufficientFunds:
    account_number: str
    balance: Decimal


@dataclass(frozen=True)
class AccountNotFound:
    account_number: str


@dataclass(frozen=True)
class UserPage:
    users: List[User]
    count: int
    total_pages: int
    has_previous_page: bool
    has_next_page: bool


LoginOutcome = Union[LoginAllowed, LoginDenied, LoginLocked]
LoginResult = Union[LoginSucceeded, LoginDenied, LoginLocked]
BalanceResult = Union[BalanceUpdated, InsufficientFunds, AccountNotFound]
TransferResult = Union[TransferCompleted, InsufficientFunds, AccountNotFound]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320, description="Login email")
    password: str = Field(..., min_length=1, max_length=255, description="Plain password")

    @field_validator('email')
    @classmethod
    def check_email(cls, v):
        return validate_email(v)


class CreateUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6, max_length=32)
    password_confirm: str = Field(..., min_length=1)

    @field_validator('email')
    @classmethod
    def check_email(cls, v):
        return validate_email(v)

    @field_validator('password')
    @classmethod
    def check_password(cls, v):
        return validate_password_strength(v)


class UpdateUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=320)

    @field_validator('email')
    @classmethod
    def check_email(cls, v):
        return validate_email(v)


class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Account holder name")
    email: str = Field(..., min_length=3, max_length=320, description="Account holder email")
    phone: str = Field(..., min_length=11, max_length=20, description="Telephone number")
    initial_balance: Decimal = Field(
        ...,
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Opening balance"
    )
    password: str = Field(..., min_length=6, max_length=32)
    password_confirm: str = Field(..., min_length=1)

    @field_validator('email')
    @classmethod
    def check_email(cls, v):
        return validate_email(v)

    @field_validator('phone')
    @classmethod
    def check_phone(cls, v):
        if not re.match(r'^\+?[0-9]+$', v):
            raise ValueError('Telephone number must contain only digits')
        return v

    @field_validator('password')
    @classmethod
    def check_password(cls, v):
        return validate_password_strength(v)


class ChangePasswordRequest(BaseModel):
    password_old: str = Field(..., min_length=1)
    password_new: str = Field(..., min_length=6, max_length=32)
    password_confirm: str = Field(..., min_length=1)

    @field_validator('password_new')
    @classmethod
    def check_password(cls, v):
        return validate_password_strength(v)


class DepositRequest(BaseModel):
    account_number: str = Field(..., description="Account receiving the deposit")
    deposit: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)

    @field_validator('account_number')
    @classmethod
    def check_account_number(cls, v):
        return validate_account_number(v)


class PaymentRequest(BaseModel):
    account_number: str = Field(..., description="Account paying")
    pay: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)

    @field_validator('account_number')
    @classmethod
    def check_account_number(cls, v):
        return validate_account_number(v)


class TransferRequest(BaseModel):
    source_account: str = Field(..., description="Account sending the money")
    target_account: str = Field(..., description="Account receiving the money")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)

    @field_validator('source_account', 'target_account')
    @classmethod
    def check_account_number(cls, v):
        return validate_account_number(v)

    @model_validator(mode='after')
    def check_distinct_accounts(self):
        if self.source_account == self.target_account:
            raise ValueError('Source and target accounts must differ')
        return self


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class LoginResponse(BaseModel):
    email: str
    name: str
    user_id: str
    token: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str


class AccountResponse(BaseModel):
    id: str
    account_number: str
    name: str
    email: str
    phone: str
    balance: Money


class BalanceResponse(BaseModel):
    account_number: str = Field(..., description="Account number")
    balance: Money = Field(..., description="Account balance after the operation")
    timestamp: datetime = Field(default_factory=datetime.now)


class TransferResponse(BaseModel):
    source_account: str
    target_account: str
    amount: Money
    balance: Money = Field(..., description="Source account balance after the transfer")
    timestamp: datetime = Field(default_factory=datetime.now)


class UserListResponse(BaseModel):
    page_number: int = Field(..., description="Requested page, starting at 1")
    page_size: int = Field(..., description="Users per page; 0 means everything on one page")
    count: int = Field(..., description="Users matching the search")
    total_pages: int
    has_previous_page: bool
    has_next_page: bool
    data: List[UserResponse]


class IdResponse(BaseModel):
    id: str


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    users_count: int = Field(..., description="Number of operators in system")
