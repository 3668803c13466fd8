from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen

from pydantic import BaseModel, ValidationError as PydanticValidationError

from config import SplitwiseSettings, get_settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SplitwiseUser:
    id: int
    first_name: str
    last_name: str

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class Split:
    user_id: int
    user_name: str
    amount_cents: int


@dataclass(frozen=True)
class Expense:
    id: int
    description: str
    date: date
    is_deleted: bool
    paid_amount_cents: int  # paid by the configured user
    personal_amount_cents: int  # owed by the configured user
    updated_at: datetime  # naive UTC
    splits: tuple[Split, ...] = ()


class _UserDto(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class _ExpenseUserDto(BaseModel):
    user_id: int
    user: Optional[_UserDto] = None
    paid_share: Decimal = Decimal("0")
    owed_share: Decimal = Decimal("0")


class _ExpenseDto(BaseModel):
    id: int
    description: Optional[str] = None
    date: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    users: list[_ExpenseUserDto] = []


class _ExpensesResult(BaseModel):
    expenses: list[_ExpenseDto]
    errors: Optional[dict] = None


class _GroupDto(BaseModel):
    id: int
    members: list[_UserDto]


class _GroupResult(BaseModel):
    group: _GroupDto


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> str:
    return str(Decimal(cents) / Decimal(100))


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _user_name(user: Optional[_UserDto]) -> str:
    if user is None:
        return ""
    return f"{user.first_name or ''} {user.last_name or ''}".strip()


def _to_expense(dto: _ExpenseDto, user_id: int) -> Expense:
    me = next((u for u in dto.users if u.user_id == user_id), None)
    splits = tuple(
        Split(
            user_id=u.user_id,
            user_name=_user_name(u.user),
            amount_cents=to_cents(u.owed_share),
        )
        for u in dto.users
        if u.user_id != user_id and u.owed_share > 0
    )
    return Expense(
        id=dto.id,
        description=dto.description or "",
        date=dto.date.date(),
        is_deleted=dto.deleted_at is not None,
        paid_amount_cents=to_cents(me.paid_share) if me else 0,
        personal_amount_cents=to_cents(me.owed_share) if me else 0,
        updated_at=_naive_utc(dto.updated_at),
        splits=splits,
    )


class SplitwiseClient:
    """Client for the Splitwise REST API, scoped to one user and one group."""

    def __init__(self, settings: Optional[SplitwiseSettings] = None) -> None:
        self.settings = settings if settings is not None else get_settings().splitwise

    @property
    def enabled(self) -> bool:
        return self.settings is not None

    def get_expenses(self, updated_after: datetime) -> list[Expense]:
        payload = self._request(
            "GET",
            "get_expenses",
            {
                "group_id": self._settings.group_id,
                "limit": 0,  # unlimited
                "updated_after": _naive_utc(updated_after).isoformat() + "Z",
            },
        )
        result = self._parse(_ExpensesResult, payload)
        return [_to_expense(e, self._settings.user_id) for e in result.expenses]

    def create_expense(
        self,
        total_cents: int,
        description: str,
        on_date: date,
        splits: list[Split],
    ) -> Expense:
        total = abs(total_cents)
        personal = total - sum(s.amount_cents for s in splits)
        params: dict[str, object] = {
            "group_id": self._settings.group_id,
            "cost": from_cents(total),
            "description": description,
            "date": datetime.combine(on_date, datetime.min.time()).isoformat() + "Z",
            "users__0__user_id": self._settings.user_id,
            "users__0__owed_share": from_cents(personal),
            "users__0__paid_share": from_cents(total),
        }
        # Index 0 is the payer.
        for index, split in enumerate(splits, start=1):
            params[f"users__{index}__user_id"] = split.user_id
            params[f"users__{index}__owed_share"] = from_cents(split.amount_cents)
            params[f"users__{index}__paid_share"] = "0"

        result = self._parse(
            _ExpensesResult, self._request("POST", "create_expense", params)
        )
        if result.errors:
            raise ExternalServiceError(
                f"Splitwise rejected the expense: {json.dumps(result.errors)}"
            )
        if len(result.expenses) != 1:
            raise ExternalServiceError("Unexpected Splitwise response to create_expense")
        return _to_expense(result.expenses[0], self._settings.user_id)

    def delete_expense(self, expense_id: int) -> None:
        self._request("POST", f"delete_expense/{expense_id}", {})

    def get_users(self) -> list[SplitwiseUser]:
        payload = self._request("GET", "get_group", {"id": self._settings.group_id})
        group = self._parse(_GroupResult, payload).group
        return [
            SplitwiseUser(
                id=member.id,
                first_name=member.first_name or "",
                last_name=member.last_name or "",
            )
            for member in group.members
            if member.id != self._settings.user_id
        ]

    @property
    def _settings(self) -> SplitwiseSettings:
        if self.settings is None:
            raise ExternalServiceError("Splitwise integration disabled")
        return self.settings

    def _request(self, method: str, path: str, params: dict[str, object]) -> dict:
        settings = self._settings
        url = urljoin(settings.root_url, path)
        data = None
        if method == "GET":
            if params:
                url = f"{url}?{urlencode(params)}"
        else:
            data = urlencode(params).encode("utf-8")
        req = Request(
            url,
            data=data,
            method=method,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {settings.api_key}",
            },
        )
        try:
            with urlopen(req, timeout=settings.timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            if exc.code == 401:
                raise ExternalServiceError(
                    "Application was not allowed to retrieve the requested information from Splitwise"
                ) from exc
            raise ExternalServiceError(
                f"Error while calling Splitwise {path}: status code was {exc.code}"
            ) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise ExternalServiceError(f"Failed to reach Splitwise for {path}") from exc

    @staticmethod
    def _parse(model: type[BaseModel], payload: dict):
        try:
            return model.model_validate(payload)
        except PydanticValidationError as exc:
            logger.error(f"splitwise_unexpected_response: model={model.__name__}")
            raise ExternalServiceError("Unexpected Splitwise response") from exc
