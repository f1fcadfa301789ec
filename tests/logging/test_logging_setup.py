import logging

from dreamscape.utils.logging_setup import (
    ContextFilter,
    LOG_FORMAT,
    LOG_OPERATION,
    LOG_SESSION_ID,
    LOG_STORE_ID,
    configure_logging,
    log_context,
)


def _record():
    return logging.LogRecord("test.logger", logging.INFO, __file__, 1, "hello", (), None)


def test_context_filter_defaults():
    record = _record()
    ContextFilter().filter(record)
    assert record.session_id == "-"
    assert record.store_id == "-"
    assert record.operation == "-"


def test_log_context_injects_and_resets():
    with log_context(session_id="session_1", store_id="store_1", operation="fetch_dreams"):
        record = _record()
        ContextFilter().filter(record)
        assert record.session_id == "session_1"
        assert record.store_id == "store_1"
        assert record.operation == "fetch_dreams"
    assert LOG_SESSION_ID.get() is None
    assert LOG_STORE_ID.get() is None
    assert LOG_OPERATION.get() is None


def test_nested_log_context_only_overrides_given_fields():
    with log_context(store_id="outer"):
        with log_context(operation="add_dream"):
            assert LOG_STORE_ID.get() == "outer"
            assert LOG_OPERATION.get() == "add_dream"
        assert LOG_OPERATION.get() is None


def test_formatting_uses_expected_fields():
    record = _record()
    ContextFilter().filter(record)
    formatted = logging.Formatter(LOG_FORMAT).format(record)
    assert "test.logger" in formatted
    assert "hello" in formatted
    assert "|" in formatted


def test_configure_logging_writes_context_to_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_filters, saved_level = list(root.handlers), list(root.filters), root.level
    saved_flag = getattr(root, "_dreamscape_logging_configured", False)
    log_file = tmp_path / "logs" / "app.log"
    try:
        configure_logging(log_file=str(log_file), level="DEBUG", force=True)
        with log_context(store_id="s42", operation="delete_dream"):
            logging.getLogger("dreamscape.test").info("deleted")
        for handler in root.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "s42 | delete_dream | deleted" in text
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for log_filter in list(root.filters):
            root.removeFilter(log_filter)
        for handler in saved_handlers:
            root.addHandler(handler)
        for log_filter in saved_filters:
            root.addFilter(log_filter)
        root.setLevel(saved_level)
        root._dreamscape_logging_configured = saved_flag
