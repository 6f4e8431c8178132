import json
import logging
import uuid

from cartpricing.core.logging_config import JsonFormatter, RequestIdFilter, request_id_ctx_var


def test_json_formatter_lifts_extra_fields():
    cart_id = uuid.uuid4()
    record = logging.LogRecord("cartpricing.services.reconciler", logging.INFO, __file__, 1, "coupon_applied", None, None)
    record.cart_id = cart_id
    record.amount = 960

    token = request_id_ctx_var.set("req-1")
    try:
        RequestIdFilter("cartpricing").filter(record)
    finally:
        request_id_ctx_var.reset(token)

    document = json.loads(JsonFormatter().format(record))
    assert document["event"] == "coupon_applied"
    assert document["level"] == "info"
    assert document["service"] == "cartpricing"
    assert document["request_id"] == "req-1"
    assert document["cart_id"] == str(cart_id)
    assert document["amount"] == 960
    assert "levelno" not in document


def test_request_id_defaults_to_dash():
    record = logging.LogRecord("x", logging.WARNING, __file__, 1, "msg", None, None)
    RequestIdFilter("svc").filter(record)
    assert record.request_id == "-"
