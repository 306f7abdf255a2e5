from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx


@dataclass(frozen=True)
class MealOption:
    date: str
    food_name: str


@dataclass(frozen=True)
class UserMealStatus:
    telegram_user_id: str
    unselected_options: List[MealOption] = field(default_factory=list)
    upcoming_unselected_count: int = 0
    total_available_days: int = 0

    def options_by_date(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for opt in self.unselected_options:
            out.setdefault(opt.date, []).append(opt.food_name)
        return out


class MealSelectionSource(Protocol):
    async def users_unselected_tomorrow(self) -> List[UserMealStatus]: ...

    async def users_with_unselected_days(self, days_ahead: int) -> List[UserMealStatus]: ...


def _parse_status(raw: Dict[str, Any]) -> UserMealStatus:
    options = [
        MealOption(date=str(o.get("date") or ""), food_name=str(o.get("food_name") or o.get("food") or ""))
        for o in raw.get("unselected_options") or []
    ]
    return UserMealStatus(
        telegram_user_id=str(raw["telegram_user_id"]),
        unselected_options=options,
        upcoming_unselected_count=int(raw.get("upcoming_unselected_count") or len({o.date for o in options})),
        total_available_days=int(raw.get("total_available_days") or 0),
    )


class MealSelectionClient:
    """
    HTTP client for the meal-selection service.

    Endpoints return ``{"users": [{"telegram_user_id", "unselected_options",
    "upcoming_unselected_count", "total_available_days"}, ...]}``.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout_s: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _get_users(self, path: str, params: Dict[str, Any]) -> List[UserMealStatus]:
        async with httpx.AsyncClient(timeout=self.timeout_s, headers=self._headers()) as client:
            r = await client.get(f"{self.base_url}{path}", params=params)
            r.raise_for_status()
            data = r.json()

        return [_parse_status(u) for u in (data.get("users") or [])]

    async def users_unselected_tomorrow(self) -> List[UserMealStatus]:
        return await self._get_users("/selections/unselected", {"days_ahead": 1})

    async def users_with_unselected_days(self, days_ahead: int) -> List[UserMealStatus]:
        return await self._get_users("/selections/unselected", {"days_ahead": int(days_ahead)})


class StaticMealSource:
    """Fixed meal-selection data (local runs without MEAL_API_BASE_URL)."""

    def __init__(self, tomorrow: List[UserMealStatus] | None = None, upcoming: List[UserMealStatus] | None = None):
        self._tomorrow = list(tomorrow or [])
        self._upcoming = list(upcoming or [])

    async def users_unselected_tomorrow(self) -> List[UserMealStatus]:
        return list(self._tomorrow)

    async def users_with_unselected_days(self, days_ahead: int) -> List[UserMealStatus]:
        return list(self._upcoming)
