import logging

from campaign_dispatch.logger import configure_logging, get_logger


def test_get_logger_returns_named_logger():
    logger = get_logger("custom")
    assert logger.name == "custom"
    assert get_logger().name == "CampaignDispatch"


def test_configure_logging_uses_env_level(monkeypatch):
    monkeypatch.setenv("CDS_LOG_LEVEL", "warning")
    configure_logging()
    assert logging.getLogger().level == logging.WARNING
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG
