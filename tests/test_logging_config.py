import logging

from loguru import logger

from automate_chat.logging_config import InterceptHandler, configure_logging


def test_standard_logging_is_routed_through_loguru():
    configure_logging("DEBUG")
    captured = []
    sink_id = logger.add(lambda message: captured.append(message.record), level="DEBUG")
    try:
        logging.getLogger("automate_chat.service").info("Sent message %s", "42")
    finally:
        logger.remove(sink_id)

    assert any(isinstance(handler, InterceptHandler) for handler in logging.getLogger().handlers)
    [record] = [item for item in captured if item["message"] == "Sent message 42"]
    assert record["level"].name == "INFO"
    assert record["extra"]["component"] == "automate_chat.service"
