import logging

from tutoring.core.logging_config import configure_logging


def test_configure_logging_quiets_sql_echo() -> None:
    configure_logging("debug")

    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
