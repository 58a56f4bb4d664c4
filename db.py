from typing import Iterable, Optional

from remote import BackendError, RestClient


def _eq_params(filters: Optional[dict]) -> dict:
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


def _order_param(order: Iterable) -> str:
    return ",".join(f"{column}.{'desc' if descending else 'asc'}" for column, descending in order)


class RecordStore(RestClient):
    """Row access over PostgREST, scoped by whatever the bound token may see."""

    prefix = "/rest/v1"

    def select(self, table: str, filters: Optional[dict] = None, order=(), limit: Optional[int] = None) -> list:
        params = {"select": "*", **_eq_params(filters)}
        if order:
            params["order"] = _order_param(order)
        if limit is not None:
            params["limit"] = str(limit)
        return self._request("GET", table, params=params) or []

    def insert(self, table: str, row: dict) -> dict:
        rows = self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        if not rows:
            raise BackendError(f"Insert into {table} returned no row")
        return rows[0]

    def update(self, table: str, values: dict, filters: dict) -> list:
        if not filters:
            raise ValueError("update requires at least one filter")
        return self._request(
            "PATCH",
            table,
            params=_eq_params(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        ) or []

    def delete(self, table: str, filters: dict) -> None:
        if not filters:
            raise ValueError("delete requires at least one filter")
        self._request("DELETE", table, params=_eq_params(filters))

    def upsert(self, table: str, row: dict, on_conflict: str) -> list:
        return self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        ) or []
