"""Shared test harness setup."""

import pytest
import structlog


@pytest.fixture(autouse=True)
def _isolate_structlog(monkeypatch):
    """Keep structlog configuration from leaking between tests.

    The CLI configures structlog to print to ``sys.stderr``; under Typer's
    ``CliRunner`` that is a temporary stream closed after each invocation.
    Disabling logger caching and resetting the configuration after every
    test stops later tests from writing to a closed file.
    """
    real_configure = structlog.configure

    def configure(*args, **kwargs):
        kwargs["cache_logger_on_first_use"] = False
        return real_configure(*args, **kwargs)

    monkeypatch.setattr(structlog, "configure", configure)
    yield
    structlog.reset_defaults()
