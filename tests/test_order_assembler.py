"""Tests for building order submissions from the cart."""

import logging

import pytest

from cart import CartModel
from errors import CheckoutValidationError
from order_assembler import EMPTY_SELECTION_MESSAGE, build_order_submission, require_selected_options


class TestBuildOrderSubmission:
    def test_no_service_returns_none(self):
        assert CartModel().prepare_order_submission() is None

    def test_payload_shape(self, filled_cart, service):
        payload = filled_cart.prepare_order_submission()
        assert payload["serviceId"] == str(service["_id"])
        assert payload["selectedOptions"] == [
            {"optionId": "a", "quantity": 2},
            {"optionId": "b", "quantity": 1},
        ]
        assert (payload["totalAmount"], payload["tax"], payload["grandTotal"]) == (25, 5, 30)
        assert payload["address"]["city"] == "Paris"
        assert payload["scheduledDate"] == "2030-01-15"
        assert payload["timeSlot"] == {"start": "09:00", "end": "12:00"}
        assert payload["paymentMethod"] == "card"
        assert "providerId" not in payload

    def test_stale_options_are_dropped(self, filled_cart, caplog):
        filled_cart.selectedOptions["from-another-service"] = 3
        with caplog.at_level(logging.WARNING, logger="tidyhome.checkout"):
            payload = build_order_submission(filled_cart)
        ids = [o["optionId"] for o in payload["selectedOptions"]]
        assert "from-another-service" not in ids
        assert payload["totalAmount"] == 25
        assert "from-another-service" in caplog.text

    def test_non_positive_quantities_are_dropped(self, filled_cart):
        filled_cart.selectedOptions["b"] = 0
        payload = build_order_submission(filled_cart)
        assert payload["selectedOptions"] == [{"optionId": "a", "quantity": 2}]
        assert payload["totalAmount"] == 20

    def test_provider_id_is_forwarded(self, filled_cart, provider):
        service = dict(filled_cart.selectedService, providerId=str(provider["_id"]))
        filled_cart.set_selected_service(service)
        filled_cart.update_selected_option("a", 1)
        payload = build_order_submission(filled_cart)
        assert payload["providerId"] == str(provider["_id"])


class TestRequireSelectedOptions:
    def test_switching_service_leaves_nothing_to_submit(self, service_snapshot):
        cart = CartModel()
        cart.set_selected_service({"id": "A", "options": [{"id": "x", "price": "€4"}]})
        cart.update_selected_option("x", 3)
        cart.set_selected_service(service_snapshot)
        assert cart.selectedOptions == {}
        with pytest.raises(CheckoutValidationError, match=EMPTY_SELECTION_MESSAGE):
            require_selected_options(cart.prepare_order_submission())

    def test_missing_service(self):
        with pytest.raises(CheckoutValidationError):
            require_selected_options(None)

    def test_passes_through_valid_payload(self, filled_cart):
        payload = filled_cart.prepare_order_submission()
        assert require_selected_options(payload) is payload
