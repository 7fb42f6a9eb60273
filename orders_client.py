"""HTTP client for the order endpoints, used by the checkout session."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import OrderApiError

logger = logging.getLogger("tidyhome.orders_client")


class OrdersClient:
    """Thin wrapper over ``/orders``.

    ``http`` is any ``httpx.Client`` pointed at the API (FastAPI's TestClient
    works too). Every call returns the ``order`` object from the response body
    or raises OrderApiError.
    """

    def __init__(self, http: httpx.Client, token: Optional[str] = None):
        self.http = http
        self.token = token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
              params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, json=payload, params=params, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise OrderApiError(f"Could not reach the order service: {e}") from e
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error or not body.get("success", False):
            message = body.get("message") or f"Order service returned HTTP {response.status_code}"
            raise OrderApiError(message, status_code=response.status_code)
        return body

    def create_order(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("POST", "/orders", submission)["order"]

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/orders/{order_id}")["order"]

    def list_my_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self._call("GET", "/orders/my-orders", params=params)["orders"]

    def update_payment(self, order_id: str, payment_status: str, **details: Any) -> Dict[str, Any]:
        payload = {"paymentStatus": payment_status, **{k: v for k, v in details.items() if v is not None}}
        return self._call("PUT", f"/orders/{order_id}/payment", payload)["order"]

    def update_status(self, order_id: str, status: str) -> Dict[str, Any]:
        return self._call("PUT", f"/orders/{order_id}/status", {"status": status})["order"]

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        return self._call("PUT", f"/orders/{order_id}/cancel", {})["order"]
