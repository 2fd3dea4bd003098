import logging

from app.core.logging import RequestIdFilter, get_logger, request_id_ctx_var


def make_record() -> logging.LogRecord:
    return logging.LogRecord("app.test", logging.INFO, __file__, 1, "hello", None, None)


def test_filter_injects_default_request_id():
    record = make_record()

    assert RequestIdFilter().filter(record) is True
    assert record.request_id == "-"


def test_filter_uses_current_ws_session():
    token = request_id_ctx_var.set("ws-abcd1234")
    try:
        record = make_record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    assert record.request_id == "ws-abcd1234"


def test_get_logger_returns_named_logger():
    assert get_logger("app.services.chat_system").name == "app.services.chat_system"
