import logging

from delivery_pipeline.logger import DEFAULT_LOGGER_NAME, configure_logging, get_logger


def test_get_logger_default_name():
    assert get_logger().name == DEFAULT_LOGGER_NAME


def test_get_logger_custom_name_adds_no_handlers():
    logger = get_logger("EmailChannel")
    assert logger.name == "EmailChannel"
    assert logger.handlers == []


def test_configure_logging_uses_env_level(monkeypatch):
    root = logging.getLogger()
    previous = (root.level, list(root.handlers))
    monkeypatch.setenv("NDP_LOG_LEVEL", "warning")
    try:
        configure_logging()
        assert root.level == logging.WARNING
        configure_logging("debug")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
    finally:
        root.handlers = previous[1]
        root.setLevel(previous[0])
