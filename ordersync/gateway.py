"""HTTP gateway to the spreadsheet-backed web app that stores the dataset.

The gateway is stateless apart from its :class:`requests.Session`.  Every call
either returns the ``data`` member of a successful response or raises one of
the :mod:`ordersync.errors` classes, so callers never inspect raw responses:

``pull``
    ``GET <endpoint>?type=init&startDate=YYYY-MM-DD`` returning the customers,
    products and order line items.

``post``
    ``POST <endpoint>`` with ``{"action": ..., "data": ...}``.  A reply with
    ``errorCode == "ERR_VERSION_CONFLICT"`` raises :class:`ConflictError`, any
    other ``success: false`` raises :class:`ServerError`, and transport
    failures, timeouts and undecodable bodies raise :class:`NetworkError`.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, Mapping, Optional

import requests

from ordersync.errors import (
    VERSION_CONFLICT_CODE,
    ConflictError,
    NetworkError,
    ServerError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
USER_AGENT = "OrderSync"

WRITE_ACTIONS = frozenset(
    {
        "createOrder",
        "updateOrderContent",
        "updateOrderStatus",
        "deleteOrder",
        "batchUpdatePaymentStatus",
        "updateCustomer",
        "deleteCustomer",
        "updateProduct",
        "deleteProduct",
        "reorderProducts",
        "login",
        "changePassword",
    }
)


def pull_start_date(window_days: int, today: Optional[date] = None) -> str:
    """Return the ISO date ``window_days`` before ``today``."""

    today = today or date.today()
    return (today - timedelta(days=max(0, window_days))).isoformat()


class RemoteGateway:
    """Thin request/response client for the remote store."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("The remote gateway requires an endpoint URL")
        self._endpoint = endpoint
        self._timeout = float(timeout)
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT

    @property
    def endpoint(self) -> str:
        return self._endpoint

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def pull(self, start_date: str) -> Dict[str, Any]:
        """Fetch the full dataset, orders bounded to ``start_date`` onwards."""

        params = {"type": "init", "startDate": start_date}
        try:
            response = self._session.get(self._endpoint, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Pull failed: {exc}") from exc
        data = self._interpret(response, "init")
        if not isinstance(data, Mapping):
            raise ServerError("Pull returned no dataset")
        return dict(data)

    def post(self, action: str, data: Mapping[str, Any]) -> Any:
        """Send one write action and return the ``data`` member of the reply."""

        if action not in WRITE_ACTIONS:
            raise ValueError(f"Unknown remote action: {action}")
        body = {"action": action, "data": dict(data)}
        logger.debug("POST %s id=%s", action, data.get("id"))
        try:
            response = self._session.post(self._endpoint, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"{action} failed: {exc}") from exc
        return self._interpret(response, action)

    def login(self, password: str) -> bool:
        return self.post("login", {"password": password}) is True

    def change_password(self, old_password: str, new_password: str) -> bool:
        result = self.post(
            "changePassword",
            {"oldPassword": old_password, "newPassword": new_password},
        )
        return result is True

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _interpret(response: requests.Response, action: str) -> Any:
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise NetworkError(f"{action} failed: HTTP {response.status_code}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError(f"{action} returned an invalid response") from exc
        if not isinstance(payload, Mapping):
            raise NetworkError(f"{action} returned an invalid response")

        if payload.get("success"):
            return payload.get("data")

        error_code = payload.get("errorCode")
        if error_code == VERSION_CONFLICT_CODE:
            raise ConflictError(str(payload.get("error") or "Version conflict"))
        message = str(payload.get("error") or "Unknown error")
        raise ServerError(message, error_code=error_code)


def returned_version(data: Any) -> Any:
    """Extract ``lastUpdated`` from a write reply, if present."""

    if isinstance(data, Mapping):
        return data.get("lastUpdated")
    return None


__all__ = [
    "DEFAULT_TIMEOUT",
    "RemoteGateway",
    "WRITE_ACTIONS",
    "pull_start_date",
    "returned_version",
]
