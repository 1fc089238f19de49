import logging

from bulk_mail_scheduler.logger import get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    logger = get_logger()
    assert isinstance(logger, logging.Logger)
    assert logger.name == "BulkMailScheduler"
    assert get_logger("BulkMailScheduler.smtp").parent is logger
